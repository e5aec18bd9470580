from typing import Any, Dict, List, Optional
from sqlalchemy import Column, JSON, Text
from sqlmodel import SQLModel, Field
from datetime import datetime, timezone

def utcnow():
    return datetime.now(timezone.utc)

class Section(SQLModel):
    id: int
    code: str
    is_unlocked: bool = False
    row: int
    col: int

    # Forme persistée / envoyée : clés camelCase
    def to_doc(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "isUnlocked": self.is_unlocked,
            "row": self.row,
            "col": self.col,
        }

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "Section":
        return cls(
            id=int(doc["id"]),
            code=str(doc["code"]),
            is_unlocked=bool(doc.get("isUnlocked", False)),
            row=int(doc["row"]),
            col=int(doc["col"]),
        )

class GameState(SQLModel):
    image_url: Optional[str] = None
    sections: List[Section] = []
    updated_at: Optional[datetime] = None

    @property
    def unlocked_count(self) -> int:
        return sum(1 for s in self.sections if s.is_unlocked)

    @property
    def total_sections(self) -> int:
        return len(self.sections)

    @property
    def is_complete(self) -> bool:
        # Une grille vide n'est jamais "complète"
        return bool(self.sections) and all(s.is_unlocked for s in self.sections)

    @property
    def progress(self) -> int:
        if not self.sections:
            return 0
        return round(100 * self.unlocked_count / len(self.sections))

    def to_doc(self) -> Dict[str, Any]:
        return {
            "imageUrl": self.image_url,
            "sections": [s.to_doc() for s in self.sections],
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "GameState":
        updated = doc.get("updatedAt")
        if isinstance(updated, str):
            updated = datetime.fromisoformat(updated)
        return cls(
            image_url=doc.get("imageUrl"),
            sections=[Section.from_doc(d) for d in doc.get("sections") or []],
            updated_at=updated,
        )

class GameDocument(SQLModel, table=True):
    """Singleton game document, one row per game key."""
    key: str = Field(primary_key=True)
    image_url: Optional[str] = Field(default=None, sa_column=Column(Text))
    sections: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    updated_at: datetime = Field(default_factory=utcnow)
