"""
Top-level package initializer for runbox_Server_API.

The service provisions disposable container sandboxes and exposes them to
remote callers over HTTP. See ``app.main`` for the application entry point.
"""
