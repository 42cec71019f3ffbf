"""printer-mcp command-line interface."""
