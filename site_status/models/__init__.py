from site_status.models.site import Site, Audit  # noqa: F401
