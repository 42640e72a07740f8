from tcell_states.cli import main

main()
