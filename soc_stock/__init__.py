"""
Soil organic carbon stock mapping package.

Modules:
    config              – default constants and the PipelineConfig run settings
    errors              – error taxonomy and the diagnostics collector
    records             – typed records (Core, DepthSample, ...) and ingestion checks
    raster_io           – GeoTIFF read/write, covariate stacks, stratum grids
    depth_harmonization – equal-area spline + bootstrap onto standard depths
    variogram           – empirical semivariogram and ordered fitting strategies
    kriging             – ordinary kriging per (stratum, depth) with CV
    spatial_cv          – k-means spatial folds and hold-out metrics
    random_forest       – pooled random forest per depth with spatial CV
    applicability       – dissimilarity index / area of applicability mask
    interpolation       – InterpolationMethod variant with a uniform interface
    carbon_stock        – concentration → stock, vertical integration, conservative bound
    aggregation         – stratum summaries and the ALL row
    run_all             – orchestrator: run every stage + save outputs
"""

__version__ = "0.1.0"
