from torrouter.server import main

main()
