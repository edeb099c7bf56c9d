import sys

from .operator import main

if __name__ == '__main__':
    sys.exit(main())
