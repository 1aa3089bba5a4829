"""Pure domain layer: lifecycle graph, DTOs and time abstraction."""
