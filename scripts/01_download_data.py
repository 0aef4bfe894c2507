#!/usr/bin/env python3
"""
Download public blood scRNA-seq datasets for the integration comparison.
"""

import sys
from pathlib import Path
import argparse

# Ensure package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from blood_integration.config.settings import get_settings
from blood_integration.data.download import download_geo_supplementary, download_public_dataset
from blood_integration.exceptions import PipelineError
from blood_integration.utils.logging_utils import setup_logging


def main():
    """Download the registered datasets and any requested GEO series."""
    settings = get_settings()

    parser = argparse.ArgumentParser(description='Download public blood scRNA-seq datasets')
    parser.add_argument('datasets', nargs='*', default=list(settings.DATASETS),
                        help=f"Registered datasets ({', '.join(settings.DATASETS)})")
    parser.add_argument('--geo', action='append', default=[],
                        help='GEO series whose supplementary count tables to fetch (repeatable)')
    parser.add_argument('--overwrite', action='store_true', help='Download again even if present')
    args = parser.parse_args()

    setup_logging(settings.LOG_LEVEL)
    total = len(args.datasets) + len(args.geo)

    print(f"""
╔══════════════════════════════════════════════════════════════════════════════╗
║                    DATA DOWNLOAD - BLOOD scRNA-seq INTEGRATION               ║
╚══════════════════════════════════════════════════════════════════════════════╝

Downloading {total} datasets...
""")

    success_count = 0

    for name in args.datasets:
        print(f"\n{'='*60}")
        print(f"Downloading {name}")
        print(f"{'='*60}")
        try:
            path = download_public_dataset(name, overwrite=args.overwrite)
            success_count += 1
            print(f"✓ {name} ready at {path}")
        except PipelineError as e:
            print(f"✗ Error downloading {name}: {e}")

    for geo_id in args.geo:
        print(f"\n{'='*60}")
        print(f"Downloading {geo_id}")
        print(f"{'='*60}")
        try:
            path = download_geo_supplementary(geo_id)
            success_count += 1
            print(f"✓ {geo_id} supplementary files in {path}")
        except PipelineError as e:
            print(f"✗ Error downloading {geo_id}: {e}")

    print(f"""
\n{'='*80}
DOWNLOAD SUMMARY
{'='*80}

Successfully downloaded: {success_count}/{total} datasets

Next step: list the datasets and their QC thresholds in a manifest, then run
  python run_pipeline.py --manifest datasets.json
""")
    return 0 if success_count == total else 1


if __name__ == "__main__":
    sys.exit(main())
