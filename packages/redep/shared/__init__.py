"""Wire-level pieces shared by the redep client and server."""
