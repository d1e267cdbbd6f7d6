import sys

from ntpu_assistant.cli import main

if __name__ == "__main__":
    sys.exit(main())
