"""Command line tool for flux-release."""
