from scripts.school_sync.cli import main

main()
