"""gifcrop command-line interface."""
