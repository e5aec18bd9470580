import os, logging, secrets
from flask import Flask, render_template, request, redirect, url_for, session, flash, jsonify, abort, Response
from flask_socketio import SocketIO, emit
from dotenv import load_dotenv
from services import game_state, admin_setup
from services.game_state import UnlockResult, UnlockStatus
from services.store import GameStore, StoreUnavailable, create_store, DEFAULT_GAME_KEY, DEFAULT_LOCAL_PATH
from services.sync_loop import ClientSyncLoop, VERIFY_DELAY_SEC
from services.qr_cards import generate_shareable_artifacts, make_card
from services.mqtt_bridge import MqttBridge

logger = logging.getLogger(__name__)

# Pages ouvertes via un lien de carte mais jamais connectées
MAX_PENDING_ENTRIES = 1000

# ------------------ CONFIG ------------------
def load_config() -> dict:
    return {
        "SECRET_KEY": os.getenv("SECRET_KEY", "dev"),
        "DB_URI": os.getenv("DB_URI") or None,
        "LOCAL_STORE_PATH": os.getenv("LOCAL_STORE_PATH", DEFAULT_LOCAL_PATH),
        "GAME_KEY": os.getenv("GAME_KEY", DEFAULT_GAME_KEY),
        "GRID_SIZE": int(os.getenv("GRID_SIZE", game_state.DEFAULT_GRID_SIZE)),
        "VERIFY_DELAY_SEC": float(os.getenv("VERIFY_DELAY_SEC", VERIFY_DELAY_SEC)),
        "VERIFY_IN_BACKGROUND": True,
        "SOCKETIO_ASYNC_MODE": os.getenv("SOCKETIO_ASYNC_MODE", "eventlet"),
        # Les photos sont stockées en data URL dans le document
        "MAX_CONTENT_LENGTH": int(os.getenv("MAX_UPLOAD_MB", "8")) * 1024 * 1024,
    }

def result_message(result: UnlockResult) -> str:
    if result.status == UnlockStatus.NEWLY_UNLOCKED:
        return f"Piece #{result.piece_number} unlocked!"
    if result.status == UnlockStatus.ALREADY_UNLOCKED:
        return f"Piece #{result.piece_number} was already unlocked."
    return "Invalid QR code."

# ------------------ APP / SOCKET ------------------
def create_app(overrides: dict | None = None, store: GameStore | None = None,
               bridge: MqttBridge | None = None):
    app = Flask(__name__)
    app.config.update(load_config())
    if overrides:
        app.config.update(overrides)

    if store is None:
        store = create_store(app.config["DB_URI"], app.config["LOCAL_STORE_PATH"], app.config["GAME_KEY"])
    if bridge is None:
        bridge = MqttBridge.from_env()
    app.extensions["game_store"] = store

    socketio = SocketIO(app, async_mode=app.config["SOCKETIO_ASYNC_MODE"], cors_allowed_origins="*")

    # Une boucle de synchro par client connecté (sid -> loop)
    loops: dict[str, ClientSyncLoop] = {}
    # Code d'entrée en attente, par jeton de page (remis une seule fois)
    pending_entries: dict[str, str] = {}

    def spawn(fn, *args):
        if app.config["VERIFY_IN_BACKGROUND"]:
            socketio.start_background_task(fn, *args)
        else:
            fn(*args)

    def announce(result: UnlockResult):
        if result.status != UnlockStatus.NEWLY_UNLOCKED or result.state is None:
            return
        st = result.state
        bridge.piece_unlocked(store.game_key, result.piece_number, st.unlocked_count, st.total_sections)
        if st.is_complete:
            logger.info("game %s complete", store.game_key)
            bridge.puzzle_complete(store.game_key)

    def base_url() -> str:
        return url_for("index", _external=True)

    # ------------------ ERREURS ------------------
    @app.errorhandler(StoreUnavailable)
    def store_unavailable(e):
        logger.error("store unavailable on %s: %s", request.path, e)
        if request.path.startswith("/api/"):
            return jsonify({"error": "store_unavailable", "retry": True}), 503
        return "Game storage is unavailable, please retry in a moment.", 503

    # ------------------ ROUTES INVITÉS ------------------
    @app.route("/")
    def index():
        code = request.args.get("code")
        if code is not None:
            # Lu une seule fois, puis retiré de l'URL visible
            session["entry_code"] = code.strip()
            return redirect(url_for("index"))
        entry_code = session.pop("entry_code", None)
        entry_token = None
        if entry_code:
            entry_token = secrets.token_urlsafe(12)
            pending_entries[entry_token] = entry_code
            while len(pending_entries) > MAX_PENDING_ENTRIES:
                pending_entries.pop(next(iter(pending_entries)))
        return render_template("index.html", entry_token=entry_token)

    @app.get("/api/state")
    def api_state():
        return jsonify(game_state.state_payload(store.load()))

    @app.post("/api/unlock")
    def api_unlock():
        data = request.get_json(silent=True) or {}
        state = store.load()
        result = game_state.resolve_code(store, str(data.get("code") or ""), state.sections if state else [])
        announce(result)
        body = result.to_payload()
        body["message"] = result_message(result)
        body["state"] = game_state.state_payload(result.state or state)
        return jsonify(body), (404 if result.status == UnlockStatus.NOT_FOUND else 200)

    # ------------------ ROUTES ADMIN ------------------
    @app.route("/admin")
    def admin():
        state = store.load()
        cards = generate_shareable_artifacts(state.sections, base_url()) if state else []
        return render_template(
            "admin.html",
            state=state,
            payload=game_state.state_payload(state),
            cards=cards,
            grid_size=game_state.grid_size_of(state) or app.config["GRID_SIZE"],
            confirm_word=admin_setup.RESET_CONFIRMATION,
        )

    @app.post("/admin/photo")
    def admin_photo():
        f = request.files.get("photo")
        try:
            grid = int(request.form.get("grid_size") or app.config["GRID_SIZE"])
            data_url = admin_setup.image_to_data_url(f.read() if f else b"")
            state = admin_setup.upload_photo(store, data_url, grid)
        except ValueError as e:
            flash(str(e), "error")
        else:
            flash(f"Photo saved with {state.total_sections} pieces. Print the new cards: "
                  "previous cards no longer work.", "success")
        return redirect(url_for("admin"))

    @app.get("/admin/cards/<int:section_id>.png")
    def admin_card(section_id: int):
        state = store.load()
        if not state or not 0 <= section_id < len(state.sections):
            abort(404)
        card = make_card(state.sections[section_id], base_url())
        headers = {
            "Content-Type": "image/png",
            "Content-Disposition": f'attachment; filename="piece_{card.piece_number}.png"',
            "Cache-Control": "no-store",
        }
        return Response(card.png, headers=headers)

    @app.post("/admin/sections/<int:section_id>/unlock")
    def admin_unlock(section_id: int):
        result = admin_setup.manual_unlock(store, section_id)
        announce(result)
        flash(result_message(result), "error" if result.status == UnlockStatus.NOT_FOUND else "success")
        return redirect(url_for("admin"))

    @app.post("/admin/reset")
    def admin_reset():
        try:
            admin_setup.reset_game(store, request.form.get("confirm", ""))
        except admin_setup.ConfirmationRequired as e:
            flash(str(e), "error")
        else:
            bridge.game_reset(store.game_key)
            flash("Game reset: photo and pieces removed.", "success")
        return redirect(url_for("admin"))

    # ------------------ SOCKETS ------------------
    @socketio.on("hello")
    def on_hello(data):
        sid = request.sid
        old = loops.pop(sid, None)
        if old:
            old.stop()
        loop = ClientSyncLoop(
            store,
            emit=lambda event, payload: socketio.emit(event, payload, to=sid),
            entry_code=pending_entries.pop((data or {}).get("entry") or "", None),
            sleep=socketio.sleep,
            spawn=spawn,
            verify_delay=app.config["VERIFY_DELAY_SEC"],
            on_result=announce,
        )
        try:
            loop.start()
        except StoreUnavailable as e:
            logger.error("cannot subscribe %s: %s", sid, e)
            emit("phase", {"phase": "idle", "outcome": {"status": "store_unavailable", "retry": True}})
            return
        loops[sid] = loop

    @socketio.on("submit_code")
    def on_submit_code(data):
        loop = loops.get(request.sid)
        if loop:
            loop.submit((data or {}).get("code") or "")

    @socketio.on("dismiss")
    def on_dismiss(data=None):
        loop = loops.get(request.sid)
        if loop:
            loop.dismiss()

    @socketio.on("retry")
    def on_retry(data=None):
        loop = loops.get(request.sid)
        if loop:
            loop.retry()

    @socketio.on("disconnect")
    def on_disconnect(reason=None):
        loop = loops.pop(request.sid, None)
        if loop:
            loop.stop()

    app.extensions["sync_loops"] = loops
    app.extensions["pending_entries"] = pending_entries
    return app, socketio

# ------------------ MAIN ------------------
if __name__ == "__main__":
    load_dotenv()
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app, socketio = create_app()
    socketio.run(app, host="0.0.0.0", port=int(os.getenv("PORT", 5050)))
