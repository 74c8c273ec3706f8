"""adeval - Azure Disk Encryption end-to-end validation

adeval provisions a throwaway VM with its key vault and network, enables Azure
Disk Encryption on it, waits for the encryption to finish, and tears everything
down again. Secrets never appear in logs; commands are logged masked.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
