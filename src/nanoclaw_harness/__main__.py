from nanoclaw_harness.main import main

main()
