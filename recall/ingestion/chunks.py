"""Terminal chunk wire format."""

from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

ChunkType = Literal["terminal_input", "claude_output", "terminal_output"]

INPUT_TYPES = ("terminal_input",)
OUTPUT_TYPES = ("claude_output", "terminal_output")


class Chunk(BaseModel):
    """One slice of terminal traffic as emitted by the chunk source.

    Field names are camelCase on the wire; snake_case is accepted too.
    """

    model_config = ConfigDict(populate_by_name=True)

    timestamp: int
    type: ChunkType
    content: str
    session_id: str = Field(alias="sessionId", min_length=1)
    file_context: Optional[Union[str, list[str]]] = Field(default=None, alias="fileContext")
    command_context: Optional[str] = Field(default=None, alias="commandContext")

    @property
    def is_input(self) -> bool:
        return self.type in INPUT_TYPES

    @property
    def files(self) -> list[str]:
        if not self.file_context:
            return []
        if isinstance(self.file_context, str):
            return [self.file_context]
        return [f for f in self.file_context if f]

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


def parse_chunks(raw: list) -> list[Chunk]:
    """Validate a list of chunk dicts (or Chunk objects)."""
    return [c if isinstance(c, Chunk) else Chunk.model_validate(c) for c in raw]
