"""Talos image factory client and release lookup."""
import logging
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import requests
import yaml

from rollctl.config import DEFAULT_FACTORY_URL, Profile
from rollctl.errors import RollctlError
from rollctl.utils import strip_v

logger = logging.getLogger("rollctl.factory")

INSTALLER_IMAGE = "factory.talos.dev/installer"
SECUREBOOT_INSTALLER_IMAGE = "factory.talos.dev/installer-secureboot"
REQUEST_TIMEOUT = 30


class FactoryError(RollctlError):
    """The image factory or release API could not be used."""
    pass


def build_schematic(profile: Profile) -> Dict[str, Any]:
    """Build the schematic document for ``profile``; empty sections are omitted."""
    customization: Dict[str, Any] = {}
    if profile.extensions:
        customization['systemExtensions'] = {'officialExtensions': list(profile.extensions)}
    if profile.kernel_args:
        customization['extraKernelArgs'] = list(profile.kernel_args)

    schematic: Dict[str, Any] = {}
    if profile.overlay is not None:
        schematic['overlay'] = {'name': profile.overlay.name, 'image': profile.overlay.image}
    if customization:
        schematic['customization'] = customization
    return schematic


class FactoryClient:
    """Resolves installer images through the factory schematics API."""

    def __init__(self, base_url: Optional[str] = None, session: Optional[requests.Session] = None,
                 timeout: float = REQUEST_TIMEOUT):
        self.base_url = (base_url or DEFAULT_FACTORY_URL).rstrip('/')
        self.session = session or requests.Session()
        self.timeout = timeout

    def get_schematic_id(self, schematic: Dict[str, Any]) -> str:
        """POST ``schematic`` as YAML and return the schematic ID."""
        body = yaml.safe_dump(schematic, sort_keys=False)
        try:
            response = self.session.post(
                f"{self.base_url}/schematics",
                data=body.encode('utf-8'),
                headers={'Content-Type': 'application/yaml'},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise FactoryError(f"failed to post schematic: {e}") from e

        if response.status_code not in (200, 201):
            raise FactoryError(f"factory API returned status {response.status_code}")

        try:
            schematic_id = response.json().get('id', '')
        except ValueError as e:
            raise FactoryError(f"failed to decode response: {e}") from e
        if not schematic_id:
            raise FactoryError("empty schematic ID returned")

        logger.debug("Schematic ID: %s", schematic_id)
        return schematic_id

    def get_installer_image(self, profile: Profile, version: str) -> str:
        """Return the installer image reference for ``profile`` at ``version``."""
        schematic_id = self.get_schematic_id(build_schematic(profile))
        base = SECUREBOOT_INSTALLER_IMAGE if profile.secureboot else INSTALLER_IMAGE
        return f"{base}/{schematic_id}:v{version}"


def generate_factory_url(profile: Profile, version: str, base_url: Optional[str] = None) -> str:
    """Build a browser URL for the factory UI preselected for ``profile``.

    Query keys are sorted; repeated keys keep their order.
    """
    base_url = base_url or DEFAULT_FACTORY_URL
    params: Dict[str, List[str]] = {'arch': [profile.arch]}

    if profile.overlay is not None:
        params['board'] = [profile.overlay.name]
        params['target'] = ['sbc']
    else:
        params['target'] = ['metal']
        if profile.secureboot:
            params['secureboot'] = ['true']

    params['platform'] = [profile.platform]
    params['bootloader'] = ['auto']
    params['cmdline-set'] = ['true']
    params['version'] = [version]

    if profile.kernel_args:
        params['cmdline'] = list(profile.kernel_args)

    extensions = []
    if profile.overlay is not None:
        # Reset the default extension selection for boards
        extensions.append('-')
    extensions.extend(profile.extensions)
    if extensions:
        params['extensions'] = extensions

    pairs: List[Tuple[str, str]] = [(key, value) for key in sorted(params) for value in params[key]]
    return f"{base_url}/?{urlencode(pairs)}"


def fetch_latest_version(url: str, session: Optional[requests.Session] = None,
                         timeout: float = REQUEST_TIMEOUT) -> str:
    """Return the latest release version (without the leading ``v``)."""
    http = session or requests
    try:
        response = http.get(url, headers={'Accept': 'application/vnd.github+json'}, timeout=timeout)
        response.raise_for_status()
        tag = response.json().get('tag_name', '')
    except (requests.RequestException, ValueError) as e:
        raise FactoryError(f"failed to fetch latest version: {e}") from e
    if not tag:
        raise FactoryError("no tag_name in release response")
    return strip_v(tag)
