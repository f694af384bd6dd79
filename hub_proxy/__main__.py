from hub_proxy.app import main

main()
