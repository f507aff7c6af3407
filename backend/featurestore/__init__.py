"""Feature store backend: shapefile ingestion and GeoJSON queries.

This package ingests uploaded shapefile bundles into a PostGIS table and
serves the stored features back as GeoJSON FeatureCollections, including
geodesic proximity filtering. All geometry is stored in EPSG:4326.

- Shapefiles are decoded with pyshp and reprojected with pyproj when a
  ``.prj`` declares another coordinate reference system
- Records are validated and normalized before any write
- Every upload is loaded in a single transaction, all or nothing
- Queries return FeatureCollections and skip rows that cannot be decoded
"""
