import sys

from klbupload.main import main

sys.exit(main())
