from tasker.main import main

main()
