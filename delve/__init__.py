"""delve - Local model runtime for a dungeon crawler's narrator.

Downloads and verifies GGUF model artifacts, loads them into an in-process
inference engine and exposes chat operations to the host application
through ModelBridge.
"""

__version__ = "0.1.0"
