"""Configuration and runtime wiring."""

from ticketflow.core.config import Config
from ticketflow.core.context import RuntimeContext

__all__ = ["Config", "RuntimeContext"]
