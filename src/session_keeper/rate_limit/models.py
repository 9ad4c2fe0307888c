"""
Conversation shapes read from the session data contract.

Only the fields rate-limit handling looks at are declared; everything else
an agent writes into a transcript entry is kept as extra data.
"""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


ContentBlock = Union[str, Dict[str, Any]]


class EntryMessage(BaseModel):
    """Message payload of a transcript entry."""
    role: Optional[str] = None
    content: Union[str, List[ContentBlock]] = ""

    model_config = ConfigDict(extra="allow")

    def iter_text(self) -> List[str]:
        """Plain text segments of the content, in order."""
        if isinstance(self.content, str):
            return [self.content]

        texts = []
        for block in self.content:
            if isinstance(block, str):
                texts.append(block)
            elif block.get("type") == "text" and isinstance(block.get("text"), str):
                texts.append(block["text"])
        return texts


class ConversationEntry(BaseModel):
    """One entry of a session transcript."""
    type: str
    is_api_error_message: bool = Field(default=False, alias="isApiErrorMessage")
    message: Optional[EntryMessage] = None

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    @property
    def is_assistant(self) -> bool:
        return self.type == "assistant"


class SessionData(BaseModel):
    """Session detail as returned by the host's session repository."""
    conversations: List[ConversationEntry] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow")

    @property
    def last_entry(self) -> Optional[ConversationEntry]:
        return self.conversations[-1] if self.conversations else None


class SessionLookup(BaseModel):
    """Result envelope of a session lookup."""
    session: Optional[SessionData] = None

    model_config = ConfigDict(extra="allow")


__all__ = [
    'EntryMessage',
    'ConversationEntry',
    'SessionData',
    'SessionLookup',
]
