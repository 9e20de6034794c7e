import logging
import shlex
from typing import Optional

from pydantic import BaseModel

from app.config import settings
from app.modules.deployments.errors import ProxyProvisioningFailure
from app.modules.deployments.schemas import Role
from app.modules.deployments.ssh_channel import SSHChannel

logger = logging.getLogger(__name__)

_NGINX_PROXY_CONNECT_TIMEOUT = "75s"
_NGINX_PROXY_SEND_TIMEOUT = "300s"
_NGINX_PROXY_READ_TIMEOUT = "300s"
_LETSENCRYPT_LIVE_DIR = "/etc/letsencrypt/live"


class ProxyResult(BaseModel):
    domain: str
    url: str
    https: bool = False


def _location_block(port: int) -> str:
    return f"""    location / {{
        proxy_pass http://127.0.0.1:{port};
        proxy_http_version 1.1;
        proxy_set_header Upgrade $http_upgrade;
        proxy_set_header Connection 'upgrade';
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;
        proxy_cache_bypass $http_upgrade;
        proxy_connect_timeout {_NGINX_PROXY_CONNECT_TIMEOUT};
        proxy_send_timeout {_NGINX_PROXY_SEND_TIMEOUT};
        proxy_read_timeout {_NGINX_PROXY_READ_TIMEOUT};
    }}"""


def render_http_vhost(domain: str, port: int) -> str:
    return f"""server {{
    listen 80;
    server_name {domain};

{_location_block(port)}
}}
"""


def render_https_vhost(domain: str, port: int) -> str:
    cert_dir = f"{_LETSENCRYPT_LIVE_DIR}/{domain}"
    return f"""server {{
    listen 80;
    server_name {domain};
    return 301 https://$host$request_uri;
}}

server {{
    listen 443 ssl http2;
    server_name {domain};

    ssl_certificate {cert_dir}/fullchain.pem;
    ssl_certificate_key {cert_dir}/privkey.pem;
    ssl_protocols TLSv1.2 TLSv1.3;
    ssl_prefer_server_ciphers on;
    ssl_session_cache shared:SSL:10m;

{_location_block(port)}
}}
"""


class NginxProvisioner:
    """Per-subdomain nginx vhosts, with optional Let's Encrypt certificates."""

    def __init__(
        self,
        channel: SSHChannel,
        base_domain: Optional[str] = None,
        enable_ssl: Optional[bool] = None,
    ):
        self.channel = channel
        self.base_domain = base_domain or settings.base_domain
        self.enable_ssl = settings.enable_ssl if enable_ssl is None else enable_ssl
        self.sites_available = settings.nginx_sites_available
        self.sites_enabled = settings.nginx_sites_enabled

    def domain_for(self, subdomain: str, role: Role) -> str:
        if role == Role.BACKEND:
            return f"{subdomain}{settings.backend_domain_suffix}.{self.base_domain}"
        return f"{subdomain}.{self.base_domain}"

    def _paths(self, domain: str):
        return f"{self.sites_available}/{domain}", f"{self.sites_enabled}/{domain}"

    def issue_certificate(self, domain: str) -> bool:
        """Standalone issuance: nginx is stopped so certbot can bind port 80, then started again."""
        email = settings.certbot_email
        email_flag = f"--email {shlex.quote(email)}" if email else "--register-unsafely-without-email"
        stop = self.channel.execute("systemctl stop nginx")
        if not stop.success:
            logger.warning(f"Could not stop nginx before issuing certificate: {stop.stderr}")
        try:
            result = self.channel.execute(
                f"certbot certonly --standalone -d {shlex.quote(domain)} "
                f"--non-interactive --agree-tos --keep-until-expiring {email_flag}"
            )
        finally:
            start = self.channel.execute("systemctl start nginx")
            if not start.success:
                logger.error(f"nginx did not come back after certificate issuance: {start.stderr}")
        if not result.success:
            logger.warning(f"Certificate issuance failed for {domain}: {result.stderr or result.stdout}")
        return result.success

    def _validate_standalone(self, config_path: str) -> bool:
        """nginx -t against a throwaway main config that only includes the new vhost."""
        wrapper_path = f"/tmp/nginx-validate-{config_path.rsplit('/', 1)[-1]}.conf"
        wrapper = f"events {{}}\nhttp {{\n    include {config_path};\n}}\n"
        if not self.channel.write_file(wrapper_path, wrapper):
            return False
        result = self.channel.execute(f"nginx -t -q -c {shlex.quote(wrapper_path)}")
        self.channel.remove_path(wrapper_path)
        if not result.success:
            logger.error(f"nginx vhost validation failed for {config_path}: {result.stderr}")
        return result.success

    def _rollback(self, config_path: str, enabled_path: str):
        self.channel.remove_path(enabled_path)
        self.channel.remove_path(config_path)

    def create_subdomain_config(self, subdomain: str, port: int, role: Role) -> ProxyResult:
        domain = self.domain_for(subdomain, role)
        config_path, enabled_path = self._paths(domain)

        https = False
        if self.enable_ssl:
            https = self.issue_certificate(domain)
            if not https:
                logger.warning(f"Falling back to plain HTTP for {domain}")
        config = render_https_vhost(domain, port) if https else render_http_vhost(domain, port)

        if not self.channel.write_file(config_path, config):
            self._rollback(config_path, enabled_path)
            raise ProxyProvisioningFailure(f"Could not write nginx config for {domain}")
        if not self._validate_standalone(config_path):
            self._rollback(config_path, enabled_path)
            raise ProxyProvisioningFailure(f"nginx config for {domain} is invalid")

        link = self.channel.execute(f"ln -sf {shlex.quote(config_path)} {shlex.quote(enabled_path)}")
        if not link.success:
            self._rollback(config_path, enabled_path)
            raise ProxyProvisioningFailure(f"Could not enable nginx site {domain}: {link.stderr}")

        test = self.channel.execute("nginx -t")
        if not test.success:
            self._rollback(config_path, enabled_path)
            raise ProxyProvisioningFailure(f"nginx configuration test failed: {test.stderr}")

        reload = self.channel.execute("systemctl reload nginx")
        if not reload.success:
            self._rollback(config_path, enabled_path)
            self.channel.execute("systemctl reload nginx")
            raise ProxyProvisioningFailure(f"nginx reload failed: {reload.stderr}")

        scheme = "https" if https else "http"
        logger.info(f"Proxy for {domain} -> 127.0.0.1:{port} enabled ({scheme})")
        return ProxyResult(domain=domain, url=f"{scheme}://{domain}", https=https)

    def delete_subdomain_config(self, subdomain: str, role: Role) -> bool:
        domain = self.domain_for(subdomain, role)
        config_path, enabled_path = self._paths(domain)

        removed_link = self.channel.remove_path(enabled_path)
        removed_file = self.channel.remove_path(config_path)
        reload = self.channel.execute("systemctl reload nginx")
        if not reload.success:
            logger.error(f"nginx reload failed after removing {domain}: {reload.stderr}")

        if self.enable_ssl:
            revoke = self.channel.execute(
                f"certbot revoke --cert-name {shlex.quote(domain)} --non-interactive --delete-after-revoke"
            )
            if not revoke.success:
                logger.warning(f"Certificate revocation failed for {domain}: {revoke.stderr or revoke.stdout}")

        success = removed_link and removed_file and reload.success
        if success:
            logger.info(f"Deleted nginx config for {domain}")
        return success

    def status(self) -> dict:
        result = self.channel.execute("systemctl is-active nginx")
        return {"running": result.stdout.strip() == "active", "output": result.stdout}
