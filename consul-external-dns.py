#!/usr/bin/env python3
"""Run consul-external-dns from a source checkout without installing it.

    ./consul-external-dns.py --consul-address http://consul:8500 hetzner --dns-zone-id ZONE

Same options as the installed `consul-external-dns` command.
"""

import sys
from pathlib import Path

SRC_DIR = Path(__file__).resolve().parent / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from consul_external_dns.cli import main  # noqa: E402

if __name__ == "__main__":
    main(sys.argv[1:])
