import logging
import os
import threading
import uuid
from collections import OrderedDict
from datetime import timedelta

from flask import Flask, Response, jsonify, render_template, request, session

from analysis import DEFAULT_MODEL, FallbackAnalyzer, OpenAIVisionAnalyzer, handle_analyze
from chat_session import (
    MAX_QUERY_LENGTH,
    MIN_QUERY_LENGTH,
    ChatSession,
    HttpAnalysisTransport,
    LocalAnalysisTransport,
)
from image_intake import MAX_IMAGE_BYTES, MAX_IMAGES, SUPPORTED_TYPES, CandidateFile

# ----- Config -----
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")  # a missing key only means every request falls back
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL") or None
MODEL_ID = os.getenv("MODEL_ID", DEFAULT_MODEL)
ANALYZE_URL = os.getenv("ANALYZE_URL") or None
ANALYZE_TIMEOUT = float(os.getenv("ANALYZE_TIMEOUT", "60"))
MAX_SESSIONS = int(os.getenv("MAX_SESSIONS", "256"))
MAX_CONTENT_LENGTH = int(os.getenv("MAX_CONTENT_LENGTH", str(64 * 1024 * 1024)))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger("batchquery")

app = Flask(__name__, static_folder="static", template_folder="templates")
app.secret_key = os.getenv("FLASK_SECRET_KEY", "change-this-key")
app.permanent_session_lifetime = timedelta(days=1)
app.config["MAX_CONTENT_LENGTH"] = MAX_CONTENT_LENGTH

analyzer = FallbackAnalyzer(
    OpenAIVisionAnalyzer(OPENAI_API_KEY, model=MODEL_ID, base_url=OPENAI_BASE_URL, timeout=ANALYZE_TIMEOUT)
)


def analyze_locally(payload):
    return handle_analyze(payload, analyzer)


def make_transport():
    if ANALYZE_URL:
        return HttpAnalysisTransport(ANALYZE_URL, timeout=ANALYZE_TIMEOUT)
    return LocalAnalysisTransport(analyze_locally)


# Chat sessions live in memory only, keyed by an id kept in the signed cookie.
_sessions: "OrderedDict[str, ChatSession]" = OrderedDict()
_sessions_lock = threading.Lock()


def get_chat_session() -> ChatSession:
    sid = session.get("sid")
    with _sessions_lock:
        chat = _sessions.get(sid) if sid else None
        if chat is None:
            sid = uuid.uuid4().hex
            session["sid"] = sid
            session.permanent = True
            chat = ChatSession(transport=make_transport())
            _sessions[sid] = chat
            while len(_sessions) > MAX_SESSIONS:
                _sessions.popitem(last=False)
        else:
            _sessions.move_to_end(sid)
    return chat


def session_payload(chat: ChatSession, status: int = 200, **extra):
    payload = chat.to_dict()
    payload["toasts"] = [n.to_dict() for n in chat.drain_notifications()]
    payload.update(extra)
    return jsonify(payload), status


@app.errorhandler(413)
def payload_too_large(_error):
    return jsonify({"error": "Request body is too large"}), 413


@app.route("/")
def index():
    return render_template(
        "index.html",
        max_images=MAX_IMAGES,
        max_image_mb=MAX_IMAGE_BYTES // (1024 * 1024),
        supported_types=",".join(SUPPORTED_TYPES),
        min_query_length=MIN_QUERY_LENGTH,
        max_query_length=MAX_QUERY_LENGTH,
    )


@app.route("/api/state", methods=["GET"])
def get_state():
    return session_payload(get_chat_session())


@app.route("/api/images", methods=["POST"])
def upload_images():
    chat = get_chat_session()
    candidates = [CandidateFile.from_storage(f) for f in request.files.getlist("files")]
    result = chat.intake.submit(candidates)
    if not result.ok:
        return session_payload(chat, 400, errors=result.errors)
    return session_payload(chat, accepted=[image.id for image in result.accepted])


@app.route("/api/images/<image_id>", methods=["GET"])
def image_content(image_id):
    image = get_chat_session().intake.get(image_id)
    if image is None:
        return jsonify({"error": "Image not found"}), 404
    return Response(image.file.read(), mimetype=image.file.mime_type)


@app.route("/api/images/<image_id>", methods=["DELETE"])
def remove_image(image_id):
    chat = get_chat_session()
    chat.intake.remove(image_id)
    return session_payload(chat)


@app.route("/api/images/clear", methods=["POST"])
def clear_images():
    chat = get_chat_session()
    chat.intake.clear()
    return session_payload(chat)


@app.route("/api/chat", methods=["POST"])
def chat():
    data = request.get_json(force=True, silent=True) or {}
    query = data.get("query")
    if not isinstance(query, str):
        query = ""

    chat_session = get_chat_session()
    result = chat_session.send(query)
    status = {"invalid": 400, "busy": 409}.get(result.status, 200)
    return session_payload(chat_session, status, result=result.status)


@app.route("/api/reset", methods=["POST"])
def reset_chat():
    chat_session = get_chat_session()
    chat_session.reset()
    return session_payload(chat_session, ok=True)


@app.route("/analyze", methods=["POST"])
@app.route("/api/analyze-images", methods=["POST"])
def analyze():
    payload = request.get_json(force=True, silent=True)
    logger.info("API request: POST %s", request.path)
    body, status = analyze_locally(payload)
    return jsonify(body), status


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=5000, debug=True)
