from workspace_orchestrator.cli import main

main()
