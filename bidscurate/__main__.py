"""
Module entry-point that makes the package runnable with

    python -m bidscurate
    python -m bidscurate.cli

The behaviour is identical to the *bidscurate-cli* console script because the
Click **group** imported below performs all dispatching.
"""

from bidscurate.cli import main

if __name__ == "__main__":  # pragma: no cover
    main()
