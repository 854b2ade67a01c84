from snapsend.main import main

main()
