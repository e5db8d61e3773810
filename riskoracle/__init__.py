"""
Risk Oracle — signed, tamper-evident risk scores for on-chain consumers.
"""

__version__ = "0.1.0"
