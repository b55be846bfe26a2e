"""Server side of redep: the websocket listener and the command executor."""
