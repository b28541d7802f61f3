import sys

from udp_rpc.cli import main

sys.exit(main())
