from cloudvm.cli import main

raise SystemExit(main())
