"""Bitcoin primitives needed for xpub address derivation."""
