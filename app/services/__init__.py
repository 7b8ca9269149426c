"""Service layer: all business rules and transaction boundaries live here."""
