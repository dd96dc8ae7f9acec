import sys

from service_proxy.cli import main

sys.exit(main())
