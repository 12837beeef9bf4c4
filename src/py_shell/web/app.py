"""Flask application factory for the py-shell HTTP facade.

The ``create_app`` function wraps a shell runtime and returns a Flask
app with two endpoints:

- ``POST /api/run`` — run a pipeline and return JSON.
- ``GET /api/status`` — return the root directory and log size.

Each request runs in a fresh root context, so requests never see each
other's ``cd`` or ``export``.
"""

from __future__ import annotations

from typing import Any

from flask import Flask, Response, jsonify, request

from py_shell.process import SpawnError
from py_shell.runtime import ShellRuntime
from py_shell.stages import PipelineStage, ProcessStage, StoreResult, TextSource

_HTTP_BAD_REQUEST = 400
_HTTP_UNPROCESSABLE = 422


def _parse_stages(raw: Any) -> list[PipelineStage] | None:
    """Turn ``[["echo", "hi"], ["tr", "a-z", "A-Z"]]`` into process stages."""
    if not isinstance(raw, list) or not raw:
        return None
    stages: list[PipelineStage] = []
    for argv in raw:
        if not isinstance(argv, list) or not argv or not all(isinstance(a, str) for a in argv):
            return None
        stages.append(ProcessStage(*argv))
    return stages


def create_app(runtime: ShellRuntime | None = None) -> Flask:
    """Create and configure the Flask application.

    Args:
        runtime: The runtime to execute pipelines in; a default
            runtime writing to the server's console when None.

    Returns:
        A configured Flask application ready to serve.

    """
    shell_runtime = runtime or ShellRuntime()
    app = Flask(__name__)

    @app.route("/api/run", methods=["POST"])
    def run() -> tuple[Response, int] | Response:  # pyright: ignore[reportUnusedFunction]
        """Run a pipeline and return its stored output.

        Expects JSON body::

            {"stages": [["cmd", "arg"], ...], "input": "...",
             "directory": "...", "strict": false}

        Returns:
            JSON with ``output``, ``exit_codes`` and ``returncode``.

        """
        data = request.get_json(silent=True)
        if not isinstance(data, dict) or "stages" not in data:
            return jsonify({"error": "Missing 'stages' field"}), _HTTP_BAD_REQUEST
        stages = _parse_stages(data["stages"])
        if stages is None:
            return jsonify({"error": "'stages' must be a list of argument lists"}), _HTTP_BAD_REQUEST
        if "input" in data:
            stages.insert(0, TextSource(str(data["input"])))

        try:
            context = shell_runtime.open(directory=data.get("directory"))
        except NotADirectoryError as exc:
            return jsonify({"error": str(exc)}), _HTTP_BAD_REQUEST

        sink = StoreResult()
        strict = bool(data.get("strict", shell_runtime.strict))
        try:
            result = context.pipeline(*stages, sink, strict=strict)
        except SpawnError as exc:
            return jsonify({"error": str(exc)}), _HTTP_UNPROCESSABLE

        return jsonify(
            {
                "output": sink.data.decode(errors="replace"),
                "exit_codes": result.exit_codes,
                "returncode": result.returncode,
            },
        )

    @app.route("/api/status")
    def status() -> Response:  # pyright: ignore[reportUnusedFunction]
        """Return runtime status.

        Returns:
            JSON with ``pwd`` and ``log_entries`` fields.

        """
        return jsonify({"pwd": str(shell_runtime.directory), "log_entries": len(shell_runtime.logger)})

    return app


def main() -> None:
    """Run the HTTP facade development server.

    This is the ``py-shell-web`` console entry point.
    """
    app = create_app()
    app.run(debug=True, port=8080)
