# src/tools/docker_gateway.py
"""
Container runtime gateway: answers whether an image exists locally and what
its canonical id is.
"""
import logging
from abc import ABC, abstractmethod

import docker
from docker.errors import APIError, DockerException, NotFound

from engine.exceptions import ImageNotFound, RuntimeUnavailable


class ImageGateway(ABC):
    @abstractmethod
    def resolve_digest(self, image_ref: str) -> str:
        """Return the image id (without the ``sha256:`` prefix) or raise ImageNotFound."""


class DockerImageGateway(ImageGateway):
    def __init__(self, client=None):
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise RuntimeUnavailable(f"Cannot connect to the Docker daemon: {e}") from e
        return self._client

    def resolve_digest(self, image_ref: str) -> str:
        try:
            image = self.client.images.get(image_ref)
        except NotFound:
            raise ImageNotFound(image_ref)
        except APIError as e:
            # malformed references come back as 4xx from the daemon
            if e.is_client_error():
                raise ImageNotFound(image_ref)
            raise RuntimeUnavailable(f"Docker daemon error: {e.explanation or e}") from e
        except (DockerException, OSError) as e:
            logging.error(f"Docker daemon unreachable while inspecting {image_ref}: {e}")
            raise RuntimeUnavailable(f"Docker daemon unreachable: {e}") from e
        return image.id.replace("sha256:", "")
