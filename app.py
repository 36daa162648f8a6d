import io
import logging
import os
import time

from dotenv import load_dotenv
from flask import Flask, jsonify, render_template, request, send_file, session
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

import gemini_service
from gemini_service import AnalysisFailed, EditFailed, GenerationFailed, MissingCredential
from image_intake import ImageIntakeError, read_upload
from schemas import BadRequest, EditorOpenRequest, EditRequest, GenerateRequest, ViewRequest, parse_body
from stylist_state import InvalidTransition, OutfitStyle, SessionRegistry, StaleResult

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = Flask(__name__)
app.secret_key = os.getenv("FLASK_SECRET_KEY") or os.urandom(32)
app.config["MAX_CONTENT_LENGTH"] = int(os.getenv("MAX_UPLOAD_MB", 20)) * 1024 * 1024
CORS(app)

client = gemini_service.create_client(os.getenv("GEMINI_API_KEY"))
sessions = SessionRegistry(
    max_sessions=int(os.getenv("MAX_SESSIONS", 100)),
    idle_seconds=int(os.getenv("SESSION_IDLE_MINUTES", 60)) * 60,
)


def get_client():
    return client


def current_session():
    session_id = session.get("stylist_id")
    if not session_id:
        session_id = session["stylist_id"] = sessions.new_id()
        logger.info("[STATE] New browser session %s (%d held).", session_id[:8], len(sessions) + 1)
    return sessions.get(session_id)


def state_response(stylist, status=200, **extra):
    with stylist.lock:
        body = {"success": status < 400, "state": stylist.snapshot()}
    body.update(extra)
    return jsonify(body), status


def request_body(model):
    return parse_body(model, request.get_json(silent=True))


# ---------------------------------------------------------------------------
# Error boundary
# ---------------------------------------------------------------------------

@app.errorhandler(MissingCredential)
def handle_missing_credential(e):
    return jsonify({"error": e.user_message}), 503


@app.errorhandler(InvalidTransition)
def handle_invalid_transition(e):
    return jsonify({"error": str(e)}), 409


@app.errorhandler(ImageIntakeError)
def handle_bad_image(e):
    return jsonify({"error": str(e)}), 400


@app.errorhandler(BadRequest)
def handle_bad_request(e):
    return jsonify({"error": str(e)}), 400


@app.errorhandler(413)
def handle_too_large(e):
    return jsonify({"error": "Image is too large"}), 413


@app.errorhandler(Exception)
def handle_unexpected(e):
    if isinstance(e, HTTPException):
        return e
    logger.exception("[ERROR] Unhandled error")
    return jsonify({"error": str(e)}), 500


# ---------------------------------------------------------------------------
# Flask Routes
# ---------------------------------------------------------------------------

@app.route("/")
def index():
    return render_template("index.html", styles=[s.value for s in OutfitStyle])


@app.route("/api/state", methods=["GET"])
def api_state():
    return state_response(current_session())


@app.route("/api/image", methods=["POST"])
def api_upload_image():
    """Accept a new item photo; analysis and visuals start over."""
    if "image" not in request.files:
        return jsonify({"error": "No image file provided"}), 400

    image = read_upload(request.files["image"])
    stylist = current_session()
    with stylist.lock:
        stylist.set_image(image)
    return state_response(stylist)


@app.route("/api/image", methods=["DELETE"])
def api_remove_image():
    stylist = current_session()
    with stylist.lock:
        stylist.remove_image()
    return state_response(stylist)


@app.route("/api/analyze", methods=["POST"])
def api_analyze():
    """Analyze the current item and plan one outfit per style."""
    stylist = current_session()
    gemini_service.require_client(get_client())
    with stylist.lock:
        token = stylist.begin_analysis()
        image = stylist.image

    try:
        result = gemini_service.analyze_clothing_item(get_client(), image)
    except AnalysisFailed as e:
        try:
            with stylist.lock:
                stylist.fail_analysis(token, e.user_message)
        except StaleResult:
            logger.info("[STATE] Dropping failed analysis for a replaced image.")
        return state_response(stylist, 502, error=e.user_message)
    except Exception:
        with stylist.lock:
            if token == stylist.image_token:
                stylist.fail_analysis(token)
        raise

    try:
        with stylist.lock:
            stylist.complete_analysis(token, result)
    except StaleResult:
        logger.info("[STATE] Dropping analysis for a replaced image.")
        return state_response(stylist, 409, error="Item image changed during analysis")
    return state_response(stylist)


@app.route("/api/generate", methods=["POST"])
def api_generate():
    """Generate one visual (flat-lay or on-model) for one outfit style."""
    body = request_body(GenerateRequest)
    style, visual_type = body.style, body.visual_type

    stylist = current_session()
    gemini_service.require_client(get_client())
    with stylist.lock:
        token = stylist.begin_generation(style, visual_type)
        image = stylist.image
        description = stylist.analysis.plan_for(style).description

    try:
        visual = gemini_service.generate_outfit_visual(
            get_client(), image, description, style, visual_type
        )
    except GenerationFailed as e:
        try:
            with stylist.lock:
                stylist.fail_generation(token, style, visual_type, e.user_message)
        except StaleResult:
            logger.info("[STATE] Dropping failed %s %s for a replaced image.",
                        style.value, visual_type.value)
        return state_response(stylist, 502, error=e.user_message)
    except Exception:
        with stylist.lock:
            if token == stylist.image_token:
                stylist.fail_generation(token, style, visual_type)
        raise

    try:
        with stylist.lock:
            stylist.complete_generation(token, style, visual_type, visual)
    except StaleResult:
        logger.info("[STATE] Dropping %s %s for a replaced image.", style.value, visual_type.value)
        return state_response(stylist, 409, error="Item image changed during generation")
    return state_response(stylist)


@app.route("/api/view", methods=["POST"])
def api_view():
    """Switch the active outfit tab and/or that tab's visual type."""
    body = request_body(ViewRequest)
    stylist = current_session()
    with stylist.lock:
        if body.style is not None:
            stylist.select_style(body.style)
        if body.visual_type is not None:
            stylist.select_visual_type(stylist.active_style, body.visual_type)
    return state_response(stylist)


# ---------------------------------------------------------------------------
# Editor
# ---------------------------------------------------------------------------

@app.route("/api/editor/open", methods=["POST"])
def api_editor_open():
    """Open the editor on the item photo or on a generated visual."""
    body = request_body(EditorOpenRequest)
    stylist = current_session()
    with stylist.lock:
        if body.target == "source":
            if stylist.image is None:
                raise InvalidTransition("Upload an item image first")
            image = stylist.image
        else:
            image = stylist.visuals[body.style].slot(body.visual_type).image
            if image is None:
                raise InvalidTransition(f"No {body.style.value} {body.visual_type.value} image to edit")
        stylist.open_editor(image)
    return state_response(stylist)


@app.route("/api/editor/edit", methods=["POST"])
def api_editor_edit():
    """Apply a prompt to the editor's current image; results chain."""
    prompt = request_body(EditRequest).prompt

    stylist = current_session()
    gemini_service.require_client(get_client())
    with stylist.lock:
        editor = stylist.begin_edit(prompt)
        image = editor.current_image

    try:
        edited = gemini_service.edit_image_with_prompt(get_client(), image, prompt)
    except EditFailed as e:
        try:
            with stylist.lock:
                stylist.fail_edit(editor, e.user_message)
        except StaleResult:
            logger.info("[STATE] Dropping failed edit for a closed editor.")
        return state_response(stylist, 502, error=e.user_message)
    except Exception:
        with stylist.lock:
            if editor is stylist.editor:
                stylist.fail_edit(editor)
        raise

    try:
        with stylist.lock:
            stylist.complete_edit(editor, edited)
    except StaleResult:
        logger.info("[STATE] Dropping edit for a closed editor.")
        return state_response(stylist, 409, error="Editor was closed during the edit")
    return state_response(stylist)


@app.route("/api/editor/close", methods=["POST"])
def api_editor_close():
    stylist = current_session()
    with stylist.lock:
        stylist.close_editor()
    return state_response(stylist)


@app.route("/api/editor/download", methods=["GET"])
def api_editor_download():
    """Download the editor's current image as a file."""
    stylist = current_session()
    with stylist.lock:
        if stylist.editor is None:
            raise InvalidTransition("Editor is not open")
        image = stylist.editor.current_image

    filename = f"edited-style-{int(time.time() * 1000)}.{image.extension}"
    return send_file(
        io.BytesIO(image.data),
        mimetype=image.mime_type,
        as_attachment=True,
        download_name=filename,
    )


if __name__ == "__main__":
    port = int(os.getenv("PORT", 5000))
    app.run(debug=False, host="0.0.0.0", port=port, threaded=True)
