"""Entry point for the DevFactory Oracle package."""

from devfactory_oracle.main import main

if __name__ == "__main__":
    main()
