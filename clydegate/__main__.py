from clydegate.bot import main

main()
