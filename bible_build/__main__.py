from bible_build.cli import main


raise SystemExit(main())
