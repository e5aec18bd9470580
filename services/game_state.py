# services/game_state.py
from __future__ import annotations
import logging
import secrets
import string
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from models import GameState, Section
from services.store import GameStore, StaleSections

logger = logging.getLogger(__name__)

# ---- Codes imprimés sur les cartes QR : WED-XXXXX (36^5 combinaisons)
CODE_PREFIX = "WED-"
CODE_ALPHABET = string.digits + string.ascii_uppercase
CODE_LENGTH = 5

DEFAULT_GRID_SIZE = 4

# =========================
# Génération de la grille
# =========================
def generate_code() -> str:
    return CODE_PREFIX + "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))

def build_sections(grid_size: int) -> List[Section]:
    """Fresh, all-locked sections for a ``grid_size x grid_size`` grid."""
    seen: set[str] = set()
    sections = []
    for i in range(grid_size * grid_size):
        code = generate_code()
        while code in seen:
            code = generate_code()
        seen.add(code)
        sections.append(Section(id=i, code=code, is_unlocked=False,
                                row=i // grid_size, col=i % grid_size))
    return sections

# =========================
# Résolution d'un code
# =========================
class UnlockStatus(str, Enum):
    NEWLY_UNLOCKED = "newly_unlocked"
    ALREADY_UNLOCKED = "already_unlocked"
    NOT_FOUND = "not_found"

@dataclass
class UnlockResult:
    status: UnlockStatus
    section_id: Optional[int] = None
    state: Optional[GameState] = None   # only set when a write happened

    @property
    def piece_number(self) -> Optional[int]:
        return None if self.section_id is None else self.section_id + 1

    def to_payload(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "section_id": self.section_id,
            "piece": self.piece_number,
        }

def find_section(code: str, sections: List[Section]) -> Optional[Section]:
    code = (code or "").strip()
    if not code:
        return None
    return next((s for s in sections if s.code == code), None)

def resolve_code(store: GameStore, code: str, sections: List[Section]) -> UnlockResult:
    """Match ``code`` against ``sections`` and unlock it at most once.

    Safe to call repeatedly with the same code: the first call returns
    NEWLY_UNLOCKED, every later one ALREADY_UNLOCKED without writing.
    StoreUnavailable from the store is left to the caller.
    """
    section = find_section(code, sections)
    if section is None:
        logger.info("code %r matches no section", code)
        return UnlockResult(UnlockStatus.NOT_FOUND)
    if section.is_unlocked:
        return UnlockResult(UnlockStatus.ALREADY_UNLOCKED, section.id)
    try:
        state = store.apply_unlock(section.id, sections)
    except StaleSections as e:
        # Photo re-téléversée entre-temps : cette carte n'existe plus
        logger.info("code %r retired: %s", code, e)
        return UnlockResult(UnlockStatus.NOT_FOUND)
    return UnlockResult(UnlockStatus.NEWLY_UNLOCKED, section.id, state)

# =========================
# Payload envoyé aux clients
# =========================
def state_payload(state: Optional[GameState]) -> Dict[str, Any]:
    if state is None or not state.image_url:
        # Pas encore de photo : écran d'attente, pas une erreur
        return {
            "status": "waiting",
            "imageUrl": None,
            "sections": [],
            "unlocked": 0,
            "total": 0,
            "progress": 0,
            "complete": False,
        }
    return {
        "status": "complete" if state.is_complete else "playing",
        "imageUrl": state.image_url,
        # Les codes ne quittent jamais le serveur
        "sections": [
            {"id": s.id, "row": s.row, "col": s.col, "isUnlocked": s.is_unlocked}
            for s in state.sections
        ],
        "unlocked": state.unlocked_count,
        "total": state.total_sections,
        "progress": state.progress,
        "complete": state.is_complete,
    }

def grid_size_of(state: Optional[GameState]) -> int:
    if state is None or not state.sections:
        return 0
    return max(s.col for s in state.sections) + 1
