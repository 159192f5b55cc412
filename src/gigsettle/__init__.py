"""gigsettle — settlement and distribution engine for gig payments.

Verifies that a payer's payment on one of several rails (card, wallet,
onchain, credit) satisfies an obligation, records at most one accepted
settlement per obligation, and splits accepted money among members.
"""

__version__ = "0.1.0"
