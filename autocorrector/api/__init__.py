"""HTTP surface for starting, observing and managing auto-correction runs."""
