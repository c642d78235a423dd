"""Main entry point for the gameorganizer package."""

from gameorganizer.cli import main

if __name__ == "__main__":
    main()
