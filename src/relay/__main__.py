"""Run the relay server: ``python -m relay --config configs/relay.yaml``."""

from relay.server import main

if __name__ == "__main__":
    main()
