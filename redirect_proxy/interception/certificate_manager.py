"""
Certificate Manager for the Interception CA

Handles:
- Locating the CA certificate mitmproxy generates on first start
- CA certificate details extraction
- Trust-store installation instructions
"""

import hashlib
from pathlib import Path
from typing import Optional, Dict, Any
import structlog
from cryptography import x509
from cryptography.hazmat.primitives import serialization

logger = structlog.get_logger()


class CertificateManager:
    """
    Reports on the root certificate used to sign intercepted hosts

    Clients only accept decrypted traffic once this CA is trusted; installing
    it into the OS store is left to the user.
    """

    def __init__(self, config):
        self.config = config
        self.logger = logger.bind(component="certificate_manager")
        self.ca_cert_dir = Path(config.ca_cert_dir)

    def get_ca_cert_path(self) -> Path:
        """
        Get the path to the CA certificate

        mitmproxy automatically generates the CA cert on first run.
        This returns the expected path.
        """
        return self.ca_cert_dir / f"{self.config.ca_cert_name}.pem"

    def ca_cert_exists(self) -> bool:
        """Check if CA certificate exists"""
        return self.get_ca_cert_path().exists()

    def get_ca_cert_info(self) -> Optional[Dict[str, Any]]:
        """
        Get information about the CA certificate

        Returns:
            Dictionary with CA cert information or None if missing or unreadable
        """
        cert_path = self.get_ca_cert_path()
        if not cert_path.exists():
            return None

        try:
            cert = x509.load_pem_x509_certificate(cert_path.read_bytes())
        except (OSError, ValueError) as e:
            self.logger.error("Failed to load CA certificate", path=str(cert_path), error=str(e))
            return None

        return {
            "path": str(cert_path),
            "subject": cert.subject.rfc4514_string(),
            "issuer": cert.issuer.rfc4514_string(),
            "not_before": cert.not_valid_before_utc.isoformat(),
            "not_after": cert.not_valid_after_utc.isoformat(),
            "serial_number": cert.serial_number,
            "fingerprint": hashlib.sha256(
                cert.public_bytes(encoding=serialization.Encoding.DER)
            ).hexdigest()
        }

    def report(self):
        """Log where the CA lives, warn when clients cannot trust it yet"""
        cert_path = self.get_ca_cert_path()
        if self.ca_cert_exists():
            self.logger.info("Interception CA available", ca_cert=str(cert_path))
        else:
            self.logger.warning(
                "Interception CA not found, intercepted clients will reject TLS",
                expected=str(cert_path)
            )

    def get_installation_instructions(self) -> Dict[str, str]:
        """
        Get CA certificate installation instructions for various platforms

        Returns:
            Dictionary with installation instructions per platform
        """
        cert_path = self.get_ca_cert_path()
        cer_path = cert_path.with_suffix(".cer")

        return {
            "windows": f"""
Windows:
1. Double-click the certificate file: {cer_path}
2. Click "Install Certificate"
3. Select "Local Machine" and click "Next"
4. Select "Place all certificates in the following store"
5. Click "Browse" and select "Trusted Root Certification Authorities"
6. Click "Next" and "Finish"
""",
            "macos": f"""
macOS:
1. sudo security add-trusted-cert -d -p ssl -p basic \\
     -k /Library/Keychains/System.keychain {cert_path}
""",
            "linux": f"""
Linux (Ubuntu/Debian):
1. sudo cp {cert_path} /usr/local/share/ca-certificates/mitmproxy-ca.crt
2. sudo update-ca-certificates

Linux (CentOS/RHEL):
1. sudo cp {cert_path} /etc/pki/ca-trust/source/anchors/
2. sudo update-ca-trust
"""
        }
