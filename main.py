import sys

from ccsync.monitor import main

if __name__ == "__main__":
    sys.exit(main())
