"""Context variables for structured logging."""

from contextvars import ContextVar
from typing import Dict, Optional

_provider_id: ContextVar[str] = ContextVar("provider_id", default="")
_flow_id: ContextVar[str] = ContextVar("flow_id", default="")
_account: ContextVar[str] = ContextVar("account", default="")


def set_log_context(
    provider_id: Optional[str] = None,
    flow_id: Optional[str] = None,
    account: Optional[str] = None,
) -> None:
    if provider_id is not None:
        _provider_id.set(provider_id)
    if flow_id is not None:
        _flow_id.set(flow_id)
    if account is not None:
        _account.set(account)


def get_log_context() -> Dict[str, str]:
    return {
        "provider_id": _provider_id.get(),
        "flow_id": _flow_id.get(),
        "account": _account.get(),
    }


def clear_log_context() -> None:
    _provider_id.set("")
    _flow_id.set("")
    _account.set("")
