"""Module entry point for `python -m procpilot`."""

from procpilot.cli.main import main

if __name__ == "__main__":
    main()
