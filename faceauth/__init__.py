"""
Face Authentication Core

Biometric enrollment and verification for an existing account system:

- capture: camera ownership and still-frame capture
- matching: local descriptor matcher and managed face-collection client
- credential_store: encrypted enrollment records (SQLite)
- flow: the enrollment/verification state machine
- session_bridge: turns a verified user id into session tokens
- bootstrap: builds all of the above from config.yaml
"""

__version__ = "0.1.0"
