"""Allow ``python -m tenantctl``."""

from tenantctl.cli.main import main

if __name__ == "__main__":
    main()
