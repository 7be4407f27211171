"""Run the flux-release command line tool."""

from flux_release.tool.flux_release import main

if __name__ == "__main__":
    main()
