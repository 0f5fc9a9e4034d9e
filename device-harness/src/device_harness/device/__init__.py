"""Device control for the harness.

The engine (`managed_device.ManagedDevice`) depends only on the protocols in
`transport`, `state_monitor` and `recovery`. `adb_transport` is the concrete
transport that shells out to the platform-tools binaries; tests substitute
duck-typed fakes.
"""
