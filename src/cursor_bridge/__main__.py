from cursor_bridge.server import main

main()
