from orgteam.invite_team import main

main()
