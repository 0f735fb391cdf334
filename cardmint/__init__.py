"""CardMint — bounded-supply card issuance."""
