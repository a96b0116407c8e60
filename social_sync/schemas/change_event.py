from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field


ChangeType = Literal["INSERT", "UPDATE", "DELETE"]


class ChangeEvent(BaseModel):

    table: str
    type: ChangeType
    new: Dict[str, Any] = Field(default_factory=dict)
    old: Dict[str, Any] = Field(default_factory=dict)

    @property
    def row(self) -> Dict[str, Any]:
        return self.old if self.type == "DELETE" else self.new

    def matches(self, filters: Optional[Dict[str, Any]] = None) -> bool:
        if not filters:
            return True
        row = self.row
        return all(row.get(field) == expected for field, expected in filters.items())
