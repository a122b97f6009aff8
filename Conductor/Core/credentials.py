"""Client certificate discovery for talking to the controller.

Paths follow the layout of Puppet AIO packages:

- root (usually a daemon) uses /etc/puppetlabs/puppet/ssl and the
  configured identity as its certname
- other users use ~/.puppetlabs/etc/puppet/ssl and <USER>.mcollective

CONDUCTOR_CERTNAME overrides the certname and CONDUCTOR_SSL_DIR the
directory in every case.

Usage:
    from Conductor.Core.credentials import ClientCredentials

    creds = ClientCredentials(config)
    creds.check_ssl_setup()
    session = creds.https_session()
"""

import logging
import os
import sys
from typing import Optional

import requests

import Conductor.Helpers.logSettings as logLevel
from Conductor.Core.errors import UserError

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())

ROOT_SSL_DIR = "/etc/puppetlabs/puppet/ssl"
USER_SSL_DIR = "~/.puppetlabs/etc/puppet/ssl"
WINDOWS_SSL_DIR = r"C:\ProgramData\PuppetLabs\puppet\etc\ssl"


def _is_root() -> bool:
    getuid = getattr(os, "getuid", None)
    return getuid is not None and getuid() == 0


class ClientCredentials:
    """Locate and check the client certificate, key and CA."""

    def __init__(self, config):
        self.config = config
        self._session: Optional[requests.Session] = None

    def certname(self) -> str:
        if _is_root():
            name = self.config.ssl.identity
        else:
            name = "%s.mcollective" % os.environ.get("USER", self.config.ssl.identity)

        return os.environ.get("CONDUCTOR_CERTNAME", name)

    def ssl_dir(self) -> str:
        if self.config.ssl.ssl_dir:
            return self.config.ssl.ssl_dir
        if sys.platform.startswith("win"):
            return WINDOWS_SSL_DIR
        if _is_root():
            return ROOT_SSL_DIR
        return os.path.expanduser(USER_SSL_DIR)

    def client_public_cert(self) -> str:
        return os.path.join(self.ssl_dir(), "certs", "%s.pem" % self.certname())

    def client_private_key(self) -> str:
        return os.path.join(self.ssl_dir(), "private_keys", "%s.pem" % self.certname())

    def ca_path(self) -> str:
        return os.path.join(self.ssl_dir(), "certs", "ca.pem")

    def has_client_public_cert(self) -> bool:
        return os.path.exists(self.client_public_cert())

    def has_client_private_key(self) -> bool:
        return os.path.exists(self.client_private_key())

    def has_ca(self) -> bool:
        return os.path.exists(self.ca_path())

    def check_ssl_setup(self) -> bool:
        """
        Check that the certificate, key and CA all exist.

        Every missing file is logged before failing.

        Raises:
            UserError: If any file is missing
        """
        valid = True
        for path in (self.client_public_cert(), self.client_private_key(), self.ca_path()):
            logger.log(level=10, msg=f"Checking for SSL file {path}")
            if not os.path.exists(path):
                logger.log(level=40, msg=f"Cannot find SSL file {path}")
                valid = False

        if not valid:
            raise UserError(
                "Client SSL is not correctly setup, please request a certificate for "
                f"{self.certname()}"
            )

        return True

    def https_session(self) -> requests.Session:
        """
        Build a requests session for the controller.

        The client certificate is attached when both it and the key exist.
        Server certificates are verified against the CA when it exists,
        otherwise verification is disabled.
        """
        if self._session is not None:
            return self._session

        session = requests.Session()
        session.headers.update({"Accept": "application/json"})

        if self.has_client_public_cert() and self.has_client_private_key():
            session.cert = (self.client_public_cert(), self.client_private_key())

        if self.has_ca():
            session.verify = self.ca_path()
        else:
            logger.log(level=30, msg="No CA found, server certificates will not be verified")
            session.verify = False

        self._session = session
        return session
