# services/admin_setup.py
import base64
import io
import logging

from PIL import Image, UnidentifiedImageError

from models import GameState
from services import game_state
from services.game_state import UnlockResult, UnlockStatus
from services.store import GameStore

logger = logging.getLogger(__name__)

MIN_GRID_SIZE = 1
MAX_GRID_SIZE = 10
RESET_CONFIRMATION = "RESET"

class InvalidImage(ValueError):
    pass

class InvalidGridSize(ValueError):
    pass

class ConfirmationRequired(ValueError):
    pass

def image_to_data_url(raw: bytes) -> str:
    """Uploaded bytes -> ``data:image/...;base64,...`` (validated with Pillow)."""
    if not raw:
        raise InvalidImage("empty upload")
    try:
        with Image.open(io.BytesIO(raw)) as img:
            fmt = img.format
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise InvalidImage(f"not a readable image: {e}") from e
    mime = Image.MIME.get(fmt or "")
    if not mime:
        raise InvalidImage(f"unsupported image format {fmt!r}")
    return f"data:{mime};base64," + base64.b64encode(raw).decode("ascii")

def upload_photo(store: GameStore, image_data: str, grid_size: int) -> GameState:
    """Start a new game: fresh sections and codes, every printed card retired."""
    if not MIN_GRID_SIZE <= grid_size <= MAX_GRID_SIZE:
        raise InvalidGridSize(f"grid size must be between {MIN_GRID_SIZE} and {MAX_GRID_SIZE}")
    if not image_data:
        raise InvalidImage("no image")
    sections = game_state.build_sections(grid_size)
    logger.warning("new photo uploaded: %d fresh codes, previous cards invalidated", len(sections))
    return store.save(image_data, sections)

def manual_unlock(store: GameStore, index: int) -> UnlockResult:
    state = store.load()
    sections = state.sections if state else []
    if not 0 <= index < len(sections):
        return UnlockResult(UnlockStatus.NOT_FOUND)
    return game_state.resolve_code(store, sections[index].code, sections)

def reset_game(store: GameStore, confirmation: str) -> None:
    if (confirmation or "").strip() != RESET_CONFIRMATION:
        raise ConfirmationRequired(f"type {RESET_CONFIRMATION} to confirm")
    logger.warning("game %s reset by admin", store.game_key)
    store.clear()
