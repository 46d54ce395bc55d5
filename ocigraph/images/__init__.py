"""Local image store integration (load markers, interactive shell)."""

from ocigraph.images.loader import compose_shell_command, load_image, run_shell

__all__ = ["compose_shell_command", "load_image", "run_shell"]
