"""Allow `python -m sshfanout`."""

from sshfanout.cli import app

app()
