"""
Runnable script for block time ingestion.

    python run.py stream --chains=consensus
    python run.py backfill --chain=auto-evm --start=1000 --end=2000
    python run.py backfill-offline
"""

import sys

from block_ingest.main import cli

if __name__ == "__main__":
    sys.exit(cli())
