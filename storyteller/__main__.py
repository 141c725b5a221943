"""Allow `python -m storyteller`."""

from storyteller.cli import main

main()
