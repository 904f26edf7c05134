import sys

from toolstream.cli import run

sys.exit(run())
