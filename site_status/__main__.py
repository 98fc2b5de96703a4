from site_status.worker import main

main()
