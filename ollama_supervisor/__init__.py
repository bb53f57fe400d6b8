"""
Ollama supervisor - container entrypoint for an Ollama server.

Reports cached models on disk, starts the server, waits for it to become
healthy, optionally starts a model sync companion, and tears everything
down cleanly on SIGTERM/SIGINT.
"""

__version__ = "0.1.0"
