"""Allow running redep via `python -m redep`."""

from .cli import main

if __name__ == "__main__":
    main()
