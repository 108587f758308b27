"""toolgate daemon: control plane, stores and HTTP surface."""
