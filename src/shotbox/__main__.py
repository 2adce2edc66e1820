from shotbox.cli import main

main()
