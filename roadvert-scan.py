#!/usr/bin/env python3
#
# roadvert-scan - Eddystone-URL beacon scanner with page previews
#
# Run from a checkout without installing:  python roadvert-scan.py --help
#

from roadvert_scan.cli import main

if __name__ == "__main__":
    main()
