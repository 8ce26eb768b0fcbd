import sys

from virtcluster.cli import main

sys.exit(main())
