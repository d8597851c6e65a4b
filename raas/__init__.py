# ============================================================================
# raas/__init__.py
# Package Marker for the Orbit RaaS Control Plane
# ============================================================================
#
# PURPOSE:
# Deploys and then manages the lifecycle of an Arbitrum Orbit rollup that
# posts its data to Avail. State-changing work arrives as jobs, read-only
# status is served over HTTP.
#
# LAYOUT:
# - base/: configuration and logging setup
# - vault/: credential storage (the only place secrets live)
# - data/: the Instance Registry
# - engine/: state machine, process driver, dispatcher, status exporter
# - jobs/: public job argument schemas and the job-id router
# - server/: FastAPI read surface
#
# ============================================================================

__version__ = "0.1.0"
