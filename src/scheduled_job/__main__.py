"""Allow ``python -m scheduled_job``."""

from scheduled_job.cli.main import console_main

if __name__ == "__main__":
    console_main()
