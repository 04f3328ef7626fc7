"""Storage layer for the localnotes store.

Modules here own the on-disk layout under the store root:
``notes/``, ``versions/``, ``meta/`` and ``images/``.
"""
