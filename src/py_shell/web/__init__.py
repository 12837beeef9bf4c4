"""HTTP facade for the shell runtime.

This package provides a Flask application that runs pipelines over
HTTP.  It is an **optional** extra; install with::

    pip install py-shell[web]

The ``create_app`` factory in ``app.py`` wraps a ``ShellRuntime`` and
serves two endpoints:

- ``POST /api/run`` — run a pipeline and return its output as JSON.
- ``GET /api/status`` — root directory and audit-log size.
"""
