from __future__ import annotations

import asyncio
import sys

from solr_sync.app import run


def main() -> None:
    sys.exit(asyncio.run(run()))


if __name__ == "__main__":
    main()
