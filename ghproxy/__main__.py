from ghproxy.cli import main

main()
