from gatehouse.server import main

raise SystemExit(main())
