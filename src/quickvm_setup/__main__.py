from quickvm_setup.cli import main

main()
