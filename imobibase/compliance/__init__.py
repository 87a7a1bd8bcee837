"""LGPD/GDPR compliance engine: consent, erasure, portability, audit and DPO tooling."""
