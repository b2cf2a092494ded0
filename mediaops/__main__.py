from mediaops.main import main

main()
