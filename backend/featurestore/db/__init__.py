"""Feature store interfaces, implementations and data models.

``featurestore.db.database`` holds the store protocol consumed by the
services together with its PostGIS and in-memory implementations;
``featurestore.db.models`` holds the Feature, FeatureCollection and
StoredRow types exchanged with them.

Example:
    Resolve the configured store:
        >>> from featurestore.db import database
        >>> store = database.get_feature_store(settings)
"""
