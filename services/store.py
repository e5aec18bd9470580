# services/store.py
# Document unique de la partie : base SQL (DB_URI) ou fichier JSON local.
# Chaque écriture réussie est rediffusée à tous les abonnés du processus.
from __future__ import annotations
import itertools
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import SQLModel, Session, create_engine, select

from models import GameDocument, GameState, Section, utcnow

logger = logging.getLogger(__name__)

DEFAULT_GAME_KEY = "wedding_puzzle"
DEFAULT_LOCAL_PATH = "memory_puzzle_data.json"

Subscriber = Callable[[Optional[GameState]], None]
Mutation = Callable[[Optional[Dict[str, Any]]], Optional[Dict[str, Any]]]

# ------------------ ERREURS ------------------
class StoreError(Exception):
    pass

class StoreUnavailable(StoreError):
    pass

class StaleSections(StoreError):
    pass

# ------------------ PUB/SUB ------------------
class ChangeChannel:
    def __init__(self):
        self._subscribers: Dict[int, Subscriber] = {}
        self._ids = itertools.count()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        token = next(self._ids)
        self._subscribers[token] = callback
        def unsubscribe():
            self._subscribers.pop(token, None)
        return unsubscribe

    def publish(self, state: Optional[GameState]):
        # Copie : un abonné peut se désabonner pendant la diffusion
        for token, callback in list(self._subscribers.items()):
            if token in self._subscribers:
                callback(state)

    def __len__(self):
        return len(self._subscribers)

# ------------------ INTERFACE ------------------
class GameStore(ABC):
    """Save / update / subscribe sur le document partagé.

    Les sous-classes fournissent ``_read``, ``_write``, ``_delete`` et lèvent
    ``StoreUnavailable`` en cas d'échec du backend.
    """
    def __init__(self, game_key: str = DEFAULT_GAME_KEY):
        self.game_key = game_key
        self.changes = ChangeChannel()
        # Lecture-vérification-écriture atomique dans le processus
        self._lock = threading.RLock()

    @abstractmethod
    def _read(self) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    def _write(self, doc: Dict[str, Any]) -> None: ...

    @abstractmethod
    def _delete(self) -> None: ...

    def _transact(self, mutate: Mutation) -> None:
        with self._lock:
            doc = mutate(self._read())
            if doc is not None:
                self._write(doc)

    def load(self) -> Optional[GameState]:
        doc = self._read()
        return GameState.from_doc(doc) if doc is not None else None

    def save(self, image_url: Optional[str], sections: List[Section]) -> GameState:
        doc = {"imageUrl": image_url, "sections": [s.to_doc() for s in sections]}
        self._transact(lambda _old: dict(doc, updatedAt=utcnow().isoformat()))
        logger.info("game %s saved with %d sections", self.game_key, len(sections))
        return self._publish_current()

    def apply_unlock(self, index: int, current_sections: List[Section]) -> GameState:
        seen = current_sections[index].code if 0 <= index < len(current_sections) else None

        def unlock(doc):
            stored = list((doc or {}).get("sections") or [])
            if not 0 <= index < len(stored):
                raise StaleSections(f"section {index} does not exist")
            if stored[index].get("code") != seen:
                raise StaleSections(f"section {index} was re-issued")
            stored[index] = dict(stored[index], isUnlocked=True)
            return dict(doc, sections=stored, updatedAt=utcnow().isoformat())

        self._transact(unlock)
        logger.info("game %s: section %d unlocked", self.game_key, index)
        return self._publish_current()

    def clear(self) -> None:
        with self._lock:
            self._delete()
        logger.info("game %s cleared", self.game_key)
        self.changes.publish(None)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Enregistre ``callback`` et l'appelle tout de suite avec l'état courant."""
        unsubscribe = self.changes.subscribe(callback)
        try:
            callback(self.load())
        except Exception:
            unsubscribe()
            raise
        return unsubscribe

    def _publish_current(self) -> GameState:
        state = self.load()
        self.changes.publish(state)
        return state

# ------------------ BACKEND SQL ------------------
def _row_to_doc(row: GameDocument) -> Dict[str, Any]:
    return {
        "imageUrl": row.image_url,
        "sections": list(row.sections or []),
        "updatedAt": row.updated_at.isoformat() if row.updated_at else None,
    }

class SqlGameStore(GameStore):
    def __init__(self, db_uri: str, game_key: str = DEFAULT_GAME_KEY, echo: bool = False):
        super().__init__(game_key)
        # Accès depuis les tâches de fond Socket.IO
        connect_args = {"check_same_thread": False} if db_uri.startswith("sqlite") else {}
        try:
            self.engine = create_engine(db_uri, echo=echo, connect_args=connect_args)
            SQLModel.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"database unavailable: {e}") from e

    def _transact(self, mutate):
        # Ligne verrouillée (SELECT ... FOR UPDATE) : sûr entre plusieurs serveurs
        try:
            with self._lock, Session(self.engine) as s:
                stmt = select(GameDocument).where(GameDocument.key == self.game_key).with_for_update()
                row = s.exec(stmt).first()
                doc = mutate(_row_to_doc(row) if row is not None else None)
                if doc is None:
                    return
                row = row or GameDocument(key=self.game_key)
                self._fill(row, doc)
                s.add(row); s.commit()
        except SQLAlchemyError as e:
            logger.error("update of game %s failed: %s", self.game_key, e)
            raise StoreUnavailable(str(e)) from e

    def _fill(self, row: GameDocument, doc: Dict[str, Any]):
        row.image_url = doc.get("imageUrl")
        # Nouvelle liste, sinon la colonne JSON n'est pas marquée modifiée
        row.sections = list(doc.get("sections") or [])
        row.updated_at = utcnow()

    def _read(self):
        try:
            with Session(self.engine) as s:
                row = s.get(GameDocument, self.game_key)
                return _row_to_doc(row) if row is not None else None
        except SQLAlchemyError as e:
            logger.error("read of game %s failed: %s", self.game_key, e)
            raise StoreUnavailable(str(e)) from e

    def _write(self, doc):
        try:
            with Session(self.engine) as s:
                row = s.get(GameDocument, self.game_key) or GameDocument(key=self.game_key)
                self._fill(row, doc)
                s.add(row); s.commit()
        except SQLAlchemyError as e:
            logger.error("write of game %s failed: %s", self.game_key, e)
            raise StoreUnavailable(str(e)) from e

    def _delete(self):
        try:
            with Session(self.engine) as s:
                row = s.get(GameDocument, self.game_key)
                if row is not None:
                    s.delete(row); s.commit()
        except SQLAlchemyError as e:
            logger.error("delete of game %s failed: %s", self.game_key, e)
            raise StoreUnavailable(str(e)) from e

# ------------------ BACKEND FICHIER LOCAL ------------------
class LocalFileGameStore(GameStore):
    """Un seul appareil : ``{imageUrl, sections}`` dans un fichier JSON."""
    def __init__(self, path: str = DEFAULT_LOCAL_PATH, game_key: str = DEFAULT_GAME_KEY):
        super().__init__(game_key)
        self.path = Path(path)

    def _read(self):
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StoreUnavailable(f"cannot read {self.path}: {e}") from e
        try:
            doc = json.loads(raw)
        except json.JSONDecodeError as e:
            raise StoreUnavailable(f"corrupt game file {self.path}: {e}") from e
        return doc if isinstance(doc, dict) else None

    def _write(self, doc):
        payload = {"imageUrl": doc.get("imageUrl"), "sections": doc.get("sections") or []}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=self.path.name, suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(payload, fh)
                os.replace(tmp, self.path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StoreUnavailable(f"cannot write {self.path}: {e}") from e

    def _delete(self):
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            raise StoreUnavailable(f"cannot delete {self.path}: {e}") from e

# ------------------ SÉLECTION ------------------
def create_store(db_uri: Optional[str] = None, local_path: Optional[str] = None,
                 game_key: str = DEFAULT_GAME_KEY) -> GameStore:
    if db_uri and db_uri.strip():
        logger.info("using database store for game %s", game_key)
        return SqlGameStore(db_uri.strip(), game_key=game_key)
    path = local_path or DEFAULT_LOCAL_PATH
    logger.info("no DB_URI configured, using local file store %s", path)
    return LocalFileGameStore(path, game_key=game_key)
