import os
import tempfile
from pathlib import Path
from typing import Optional

from kubernetes import config


def load_kubeconfig(path: Optional[str] = None) -> str:
    """
    Load the kubeconfig from a given path, the KUBECONFIG_CONTENT env var or
    the KUBECONFIG env var. Returns the source the kubeconfig was loaded from.
    """
    # CI/CD secret-based loading; the client keeps the parsed config in memory
    if "KUBECONFIG_CONTENT" in os.environ:
        fd, temp_path = tempfile.mkstemp(prefix="rollctl-kubeconfig-", suffix=".yaml")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(os.environ["KUBECONFIG_CONTENT"])
            config.load_kube_config(config_file=temp_path)
        finally:
            os.remove(temp_path)
        return "KUBECONFIG_CONTENT"

    path = path or os.environ.get("KUBECONFIG")
    if path:
        resolved = Path(os.path.expanduser(path)).resolve()
        if not resolved.exists():
            raise FileNotFoundError(f"Kubeconfig not found: {resolved}")
        config.load_kube_config(config_file=str(resolved))
        return str(resolved)

    raise ValueError("No kubeconfig path provided and KUBECONFIG_CONTENT is not set.")
