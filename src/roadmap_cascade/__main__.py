"""Allow ``python -m roadmap_cascade``."""

from .cli.main import main

if __name__ == "__main__":
    main()
