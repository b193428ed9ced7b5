"""goosegate - Automation gateway for the goose agent CLI.

This package runs natural-language tasks as supervised goose subprocess jobs
inside a single scope directory and publishes the resulting tree as a
live-reloading preview site, one snapshot per git branch.

Main modules:
    - cli: Command-line interface (goosegate command)
    - core: Jobs, argument sanitizing, git publishing and watching
    - viewer: HTTP gateway, preview hosting and live-reload events
"""

__version__ = "0.1.0"
