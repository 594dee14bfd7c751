from socialhub.cli import main

main()
