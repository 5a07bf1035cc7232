from crust.cli import main

main()
