"""Context variables for structured logging."""

from contextvars import ContextVar
from typing import Dict, Optional

_run_id: ContextVar[str] = ContextVar("run_id", default="")
_stage_name: ContextVar[str] = ContextVar("stage_name", default="")
_worker_id: ContextVar[str] = ContextVar("worker_id", default="")
_subscription_id: ContextVar[str] = ContextVar("subscription_id", default="")


def set_log_context(
    run_id: Optional[str] = None,
    stage: Optional[str] = None,
    worker_id: Optional[str] = None,
    subscription_id: Optional[str] = None,
) -> None:
    if run_id is not None:
        _run_id.set(run_id)
    if stage is not None:
        _stage_name.set(stage)
    if worker_id is not None:
        _worker_id.set(worker_id)
    if subscription_id is not None:
        _subscription_id.set(subscription_id)


def get_log_context() -> Dict[str, str]:
    return {
        "run_id": _run_id.get(),
        "stage": _stage_name.get(),
        "worker_id": _worker_id.get(),
        "subscription_id": _subscription_id.get(),
    }


def clear_log_context() -> None:
    _run_id.set("")
    _stage_name.set("")
    _worker_id.set("")
    _subscription_id.set("")
