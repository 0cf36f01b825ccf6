"""Stage services: parsing, validation, categorization and risk scoring."""
