import sys

from scriptclient.main import main

sys.exit(main())
