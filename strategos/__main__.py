from strategos.main import main

main()
