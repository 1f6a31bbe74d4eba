"""Entry point for ``python -m voice_relay``."""

from voice_relay.server import main

if __name__ == "__main__":
    main()
