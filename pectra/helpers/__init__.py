"""Protocol helpers: authorization signing, transaction building and capability probing."""
