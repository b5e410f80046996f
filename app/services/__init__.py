"""Service layer: billing, isolation, provisioning and delivery."""
