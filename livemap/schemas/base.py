from typing import Any, Iterable, List

from pydantic import BaseModel

class BaseSchema(BaseModel):
    """Validated from ORM rows, PostgREST dicts and realtime payloads alike."""

    class Config:
        from_attributes = True
        # realtime rows carry columns the map never reads
        extra = "ignore"

    @classmethod
    def from_rows(cls, rows: Iterable[Any]) -> List["BaseSchema"]:
        return [cls.model_validate(r) for r in rows]
