"""Runtime helpers shared by the kernels, the CLI and the tests."""
