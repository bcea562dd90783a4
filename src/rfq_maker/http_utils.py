from __future__ import annotations

import os
import ssl

import certifi


def _resolve_ca_bundle() -> tuple[str | None, str | None]:
    env_cafile = os.getenv("SSL_CERT_FILE")
    if env_cafile:
        return env_cafile, None

    env_capath = os.getenv("SSL_CERT_DIR")
    if env_capath:
        return None, env_capath

    return certifi.where(), None


def websocket_sslopt() -> dict[str, object]:
    cafile, capath = _resolve_ca_bundle()
    sslopt: dict[str, object] = {
        "cert_reqs": ssl.CERT_REQUIRED,
        "check_hostname": True,
    }
    if cafile:
        sslopt["ca_certs"] = cafile
    if capath:
        sslopt["ca_cert_path"] = capath
    return sslopt
