# tests/__init__.py

from tests.helpers.factories import id_payload, make_control, results_frame, write_shards

__all__ = [
    "make_control",
    "id_payload",
    "results_frame",
    "write_shards",
]
