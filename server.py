from typing import Any, Dict

from flask import Flask, request, jsonify
from dotenv import load_dotenv
from pydantic import ValidationError

from comicgen import (GAIC, ComicError, ComicRequest, ErrorKind, PromptLogger,
                      generate_comic, get_api_key)

# Load environment variables
load_dotenv()


app = Flask(__name__, static_folder=None)


def read_payload() -> Dict[str, Any]:
    """JSON body when present, otherwise form-encoded fields."""
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def error_response(message: str, kind: str, status: int):
    return jsonify({"error": message, "kind": kind}), status


@app.errorhandler(405)
def method_not_allowed(e):
    kind = ErrorKind.METHOD_NOT_ALLOWED
    return error_response("Only POST is allowed", kind.value, kind.status_code)


@app.route("/api/generate", methods=["POST"], provide_automatic_options=False)
def api_generate():
    """
    Write a comic script and render every panel.

    200 {"script", "panelImages"} on success. Failures return
    {"error", "kind"}: 400 for a request that fails before any upstream call
    (malformed reference image, wrongly typed field), 500 for everything else.
    """
    try:
        req = ComicRequest.model_validate(read_payload())
        g = GAIC(get_api_key())
        result = generate_comic(g, req, PromptLogger())
    except ValidationError as e:
        app.logger.exception("Rejected comic request")
        kind = ErrorKind.INVALID_REQUEST
        return error_response(f"Invalid request: {e.error_count()} invalid field(s)",
                              kind.value, kind.status_code)
    except ComicError as e:
        app.logger.exception("Comic generation failed (%s)", e.kind.value)
        return jsonify(e.to_response()), e.status_code
    except Exception as e:
        app.logger.exception("Comic generation failed")
        kind = ErrorKind.INTERNAL
        return error_response(str(e), kind.value, kind.status_code)

    return jsonify(result.to_response())


if __name__ == "__main__":
    app.run(host="127.0.0.1", port=5001, debug=True, threaded=True)
