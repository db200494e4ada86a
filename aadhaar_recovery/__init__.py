"""
Aadhaar Recovery — DigiLocker identity extraction gating vault key recovery.

Architecture: Gate → Structure check → Layered extraction → Value gate,
then escrowed-attribute matching behind an attempt throttle.
Philosophy:  Trust nothing in the document. Decide only in code.
"""

__version__ = "1.0.0"
