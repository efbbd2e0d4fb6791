"""Allow ``python -m taskdag``."""

from taskdag.cli.main import app

app(prog_name="taskdag")
