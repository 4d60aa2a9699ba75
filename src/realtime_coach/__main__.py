"""Entry point for `python -m realtime_coach`."""

from realtime_coach.cli import main

if __name__ == "__main__":
    main()
