"""Entry-point module, in case you use `python -m aquafeed_bridge`."""

import sys

from aquafeed_bridge.cli import main

if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
