"""Run the operator with ``python -m groover``."""

from groover.server import main

if __name__ == "__main__":
    main()
