"""
carerelay -- Human-in-the-Loop Mediation Between a Caregiver and a Subject
===========================================================================

An automated intermediary converses with two fixed participants.  It reads
the Caregiver's conversation, asks a language-model backend for a
structured relay decision, and enforces an explicit approval step by the
Subject before anything derived from that conversation is relayed back to
the Caregiver's side.

The approval workflow keeps at most one pending proposal per
Caregiver/Subject pair, relays only on an exact confirmation keyword, and
records every relay, proposal, and profile change in an append-only,
hash-chained audit log.
"""

__version__ = "0.1.0"
