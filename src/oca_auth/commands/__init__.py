"""Built-in ``oca-auth`` commands, registered on the root app by :mod:`oca_auth.app`."""
