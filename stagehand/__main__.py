from stagehand.cli import main

raise SystemExit(main())
