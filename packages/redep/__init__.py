"""redep - Remote deployment trigger.

Runs a pre-configured deployment command on a remote host when an
authenticated client asks for it:
- `redep listen` / `redep start` run the server (HMAC-verified websocket)
- `redep deploy <server>` triggers the deployment from a workstation
"""

__version__ = "1.0.0"
