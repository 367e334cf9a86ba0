"""
Closed-loop PostgreSQL stress testing.

The engine runs stages of concurrent write/read actions against a dedicated
connection pool per stage, and either holds a fixed concurrency or ramps it up
until the store starts rejecting work. The ``pgstress.main`` and
``pgstress.engine.main`` modules carry the two command line entry points.
"""
