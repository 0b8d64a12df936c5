import sys

from frame_inspector.main import main

sys.exit(main())
