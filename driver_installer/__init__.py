"""Driver installer durable records.

- Backup log: append-only journal of installed/displaced files
- Uninstall: validate the journal against the live system, then reverse it
- Precompiled packages: checksummed containers of prebuilt kernel objects
"""

__all__ = []
