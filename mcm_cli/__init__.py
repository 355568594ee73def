"""
MCM CLI module.

Click-based `mcm` command for serving the API and managing servers and the
proxy from a terminal.
"""
