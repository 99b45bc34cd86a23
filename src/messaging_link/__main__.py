"""Entry point for `python -m messaging_link`."""

from .cli import main

if __name__ == "__main__":
    main()
