# services/sync_loop.py
# Une boucle par page connectée : pousse chaque instantané du document et
# pilote les phases idle -> verifying -> resolved -> idle.
from __future__ import annotations
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

from models import GameState
from services import game_state
from services.game_state import UnlockResult
from services.store import GameStore, StoreUnavailable

logger = logging.getLogger(__name__)

# Durée minimale de l'écran "vérification" (secondes)
VERIFY_DELAY_SEC = 0.8

Emit = Callable[[str, Dict[str, Any]], None]

class Phase(str, Enum):
    IDLE = "idle"
    VERIFYING = "verifying"
    RESOLVED = "resolved"

def _inline(fn, *args):
    fn(*args)

class ClientSyncLoop:
    def __init__(self, store: GameStore, emit: Emit, entry_code: Optional[str] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 spawn: Callable[..., Any] = _inline,
                 verify_delay: float = VERIFY_DELAY_SEC,
                 on_result: Optional[Callable[[UnlockResult], None]] = None):
        self.store = store
        self.emit = emit
        self.sleep = sleep
        self.spawn = spawn
        self.verify_delay = verify_delay
        self.on_result = on_result

        code = (entry_code or "").strip() or None
        self.pending_code: Optional[str] = code
        self.phase = Phase.VERIFYING if code else Phase.IDLE
        self.outcome: Optional[Dict[str, Any]] = None
        self.state: Optional[GameState] = None
        self.snapshots = 0
        self._failed_code: Optional[str] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    # ---------- cycle de vie ----------
    def start(self):
        self._emit_phase()
        self._unsubscribe = self.store.subscribe(self._on_snapshot)

    def stop(self):
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    @property
    def running(self) -> bool:
        return self._unsubscribe is not None

    # ---------- actions du client ----------
    def submit(self, code: str):
        code = (code or "").strip()
        if not code or self.phase == Phase.VERIFYING:
            return
        self.pending_code = code
        self.phase = Phase.VERIFYING
        self.outcome = None
        self._emit_phase()
        self._maybe_resolve()

    def dismiss(self):
        if self.phase != Phase.RESOLVED:
            return
        self.phase = Phase.IDLE
        self.outcome = None
        self._emit_phase()

    def retry(self):
        if self.phase == Phase.RESOLVED and self._failed_code:
            code, self._failed_code = self._failed_code, None
            self.submit(code)

    # ---------- interne ----------
    def _on_snapshot(self, state: Optional[GameState]):
        self.state = state
        self.snapshots += 1
        self.emit("state", game_state.state_payload(state))
        self._maybe_resolve()

    def _maybe_resolve(self):
        # Rien à comparer tant que le premier instantané (avec sections) n'est pas arrivé
        if not self.pending_code or self.state is None or not self.state.sections:
            return
        code, self.pending_code = self.pending_code, None
        self.spawn(self._resolve, code)

    def _resolve(self, code: str):
        self.sleep(self.verify_delay)
        sections = self.state.sections if self.state else []
        try:
            result = game_state.resolve_code(self.store, code, sections)
        except StoreUnavailable as e:
            logger.error("unlock of %r failed: %s", code, e)
            self._failed_code = code
            self._finish({"status": "store_unavailable", "section_id": None,
                          "piece": None, "retry": True})
            return
        if self.on_result:
            self.on_result(result)
        self._finish(result.to_payload())

    def _finish(self, outcome: Dict[str, Any]):
        self.outcome = outcome
        self.phase = Phase.RESOLVED
        self._emit_phase()

    def _emit_phase(self):
        self.emit("phase", {"phase": self.phase.value, "outcome": self.outcome})
