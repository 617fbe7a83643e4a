"""Main entry point dispatcher for pveshape commands."""

import sys


def main():
    """Dispatch to appropriate submodule based on command."""
    print("Use 'python -m pveshape.agent' to run the agent")
    print("Use the 'pveshape' command for the command-line interface")
    sys.exit(1)


if __name__ == "__main__":
    main()
