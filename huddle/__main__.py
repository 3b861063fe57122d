from huddle.server import main

main()
