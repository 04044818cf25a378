"""Convert DynamoDB items and apply table and stream changes to MongoDB or a DynamoDB-compatible endpoint."""

__version__ = "0.1.0"