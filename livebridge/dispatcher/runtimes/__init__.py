"""
Worker bootstraps.

Each bootstrap loads a handler from a build artifact and speaks the worker
protocol: one JSON message per line on stdin, one JSON result per line on its
private stdout. Anything the handler prints goes to stderr.
"""

from pathlib import Path

RUNTIMES_DIR = Path(__file__).resolve().parent
PYTHON_BOOTSTRAP = RUNTIMES_DIR / "python_bootstrap.py"
NODE_BOOTSTRAP = RUNTIMES_DIR / "node_bootstrap.js"

__all__ = ["NODE_BOOTSTRAP", "PYTHON_BOOTSTRAP", "RUNTIMES_DIR"]
