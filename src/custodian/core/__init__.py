"""Core infrastructure: context, logging, errors, encryption, leases, audit."""
