"""
ScriptWatch API Package.

FastAPI operator controls for the script loader.
Requires Python 3.11+.
"""

# Import app lazily to avoid circular imports
# Use: from api.main import app
