"""API router subpackage for the feature store backend.

Submodules:
    - upload: Endpoint accepting a shapefile bundle and loading its features.
    - points: Endpoints listing stored features, optionally within a
      geodesic radius of a point.

Each module exposes its own APIRouter for composition in the application's
main FastAPI instance.
"""
