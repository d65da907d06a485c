from agent_foundry.cli import main

raise SystemExit(main())
