"""Context managers for structured logging."""

import secrets
from typing import Dict, Optional

from authbroker.logging.context import get_log_context, set_log_context


def generate_flow_id() -> str:
    """
    Generate a short identifier for one acquisition or refresh attempt.

    Format: f-XXXXXXXX where X is random hex.
    """
    return f"f-{secrets.token_hex(4)}"


class LogContext:
    """
    Context manager for temporary log context.

    Usage:
        with LogContext(provider_id="github", flow_id=generate_flow_id()):
            # All logs in this block carry provider_id and flow_id
            await run_flow()
    """

    def __init__(
        self,
        provider_id: Optional[str] = None,
        flow_id: Optional[str] = None,
        account: Optional[str] = None,
    ):
        self.new_context = {
            "provider_id": provider_id,
            "flow_id": flow_id,
            "account": account,
        }
        self.old_context: Dict[str, str] = {}

    def __enter__(self) -> "LogContext":
        self.old_context = get_log_context()
        for key, value in self.new_context.items():
            if value is not None:
                set_log_context(**{key: value})
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        set_log_context(
            provider_id=self.old_context.get("provider_id", ""),
            flow_id=self.old_context.get("flow_id", ""),
            account=self.old_context.get("account", ""),
        )
        return False
