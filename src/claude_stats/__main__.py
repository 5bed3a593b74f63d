"""``python -m claude_stats``: run one hook cycle and exit 0."""

import sys

from claude_stats.cli import hook_main

if __name__ == "__main__":
    hook_main()
    sys.exit(0)
