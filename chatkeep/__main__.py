"""Main entry point for the chatkeep CLI."""

from chatkeep.cli import main

if __name__ == "__main__":
    main()
