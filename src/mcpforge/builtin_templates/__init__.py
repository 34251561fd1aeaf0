"""Templates bundled with mcpforge, used when the remote repository is unreachable."""
