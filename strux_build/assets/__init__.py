"""Build recipe, scripts and templates shipped with strux_build.

Files in this package are read through importlib.resources and hashed by
the build cache so that a new release of the tool invalidates the steps
whose recipe changed.
"""
