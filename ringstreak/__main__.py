"""Allow ``python -m ringstreak``."""

from ringstreak.cli import main

raise SystemExit(main())
