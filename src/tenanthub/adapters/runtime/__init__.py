from tenanthub.adapters.runtime.docker import DockerContainerRuntime

__all__ = ["DockerContainerRuntime"]
