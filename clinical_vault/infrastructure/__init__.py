"""Infrastructure layer: configuration, logging, encryption, audit and documents."""
