"""Module wrapper so running ``python -m bidscurate.cli`` matches the console script."""

from bidscurate.cli import main  # Re-exported Click command-group


if __name__ == "__main__":  # pragma: no cover
    main()
