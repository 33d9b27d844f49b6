from streamkit.app import main

main()
