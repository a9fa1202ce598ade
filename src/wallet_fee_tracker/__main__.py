from wallet_fee_tracker.cli import main

if __name__ == "__main__":
    main()
