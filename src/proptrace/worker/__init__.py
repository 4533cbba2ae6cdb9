"""Background workers for proptrace."""
