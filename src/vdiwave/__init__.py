"""vdiwave - wave-scheduled maintenance for linked-clone desktop pools

Philosophy:
- Ruthless simplicity
- Brick architecture (self-contained modules)
- Security by design (no credentials in code or config)
- Plan first, dispatch second

vdiwave recomposes or refreshes linked-clone desktop pools in staggered
waves so the provisioning backend is never asked to rebuild a whole fleet
at once.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
