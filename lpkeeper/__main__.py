import sys

from lpkeeper.agent import main

sys.exit(main())
