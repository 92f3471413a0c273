"""Terminal attach/detach message contract."""

from enum import Enum

from pydantic import BaseModel, Field


class TerminalMessageType(str, Enum):
    """Message types exchanged with terminal clients."""

    # Inbound
    ATTACH = "terminal-attach"
    DETACH = "terminal-detach"
    INPUT = "terminal-input"
    RESIZE = "terminal-resize"

    # Outbound
    OUTPUT = "terminal-output"
    DETACHED = "terminal-detached"
    ERROR = "terminal-error"


INBOUND_TYPES = frozenset(
    {
        TerminalMessageType.ATTACH,
        TerminalMessageType.DETACH,
        TerminalMessageType.INPUT,
        TerminalMessageType.RESIZE,
    }
)


class TerminalMessage(BaseModel):
    """A single terminal message in either direction."""

    type: TerminalMessageType
    session_id: str = Field(..., min_length=1)
    data: str | None = None
    cols: int | None = Field(default=None, ge=1, le=1000)
    rows: int | None = Field(default=None, ge=1, le=1000)
    message: str | None = None

    def to_wire(self) -> dict:
        """Serialize for the transport, omitting unset fields."""
        return self.model_dump(mode="json", exclude_none=True)
