"""
devloop
=======

Local development orchestrator: runs an update check, then a polling
bundling watcher and the web server side by side, and forwards stop
signals to all of them.
"""

__version__ = "0.1.0"
