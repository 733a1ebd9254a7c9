from . import deploy, docker, shell

__all__ = ["deploy", "docker", "shell"]
