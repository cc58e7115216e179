"""Client side of the Property Alignment Labeler: traversal, buffering, labels and the MCP server."""
