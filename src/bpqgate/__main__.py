"""Allow ``python -m bpqgate``."""

from bpqgate.main import run

if __name__ == "__main__":
    run()
