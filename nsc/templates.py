"""
nginx configuration rendering.
Pure functions from plain data to configuration text; nothing here touches disk.
"""
from __future__ import annotations

from .runtime import HTTP_PORT


def _listen(port: int, use_ipv6: bool, extra: str = "") -> str:
    suffix = f" {extra}" if extra else ""
    lines = f"    listen {port}{suffix};\n"
    if use_ipv6:
        lines += f"    listen [::]:{port}{suffix};\n"
    return lines


def render_nginx_conf(base_dir: str, vhosts_dir: str, cache_dir: str, listen_ip_family: int) -> str:
    """Render the base nginx.conf.

    Virtual hosts are pulled in from ``vhosts_dir`` by context: http vhosts
    inside the ``http`` block, stream vhosts inside the ``stream`` block.
    The dynamic-upstream control endpoint is bound to loopback only.
    """
    resolver_ipv6 = "on" if listen_ip_family == 6 else "off"
    return f"""# generated, do not edit
daemon off;
master_process on;
worker_processes auto;
pid {base_dir}/nginx.pid;
error_log stderr warn;

events {{
    worker_connections 4096;
}}

http {{
    access_log off;
    server_tokens off;
    sendfile on;
    tcp_nopush on;
    keepalive_timeout 65;

    resolver 127.0.0.11 ipv6={resolver_ipv6} valid=10s;

    proxy_cache_path {cache_dir}/_default levels=1:2 keys_zone=_default:1m max_size=1m inactive=1m;

    map $http_upgrade $connection_upgrade {{
        default upgrade;
        '' close;
    }}

    server {{
        listen 127.0.0.1:80;
        server_name 127.0.0.1;

        location /dynamic-upstream {{
            allow 127.0.0.1;
            deny all;
            dynamic_upstream;
        }}
    }}

    include {vhosts_dir}/*.http.nginx.conf;
    include {vhosts_dir}/_default.nginx.conf;
}}

stream {{
    include {vhosts_dir}/*.stream.nginx.conf;
}}
"""


def render_default_vhost(use_ipv6: bool) -> str:
    """Catch-all server: connections for unknown host names are closed."""
    return f"""# generated, do not edit
server {{
{_listen(HTTP_PORT, use_ipv6, "default_server")}
    server_name _;
    return 444;
}}
"""


def render_http_vhost(
    id: str,
    server_name: list[str],
    client_max_body_size: str,
    cache_dir: str,
    cache: bool,
    cache_max_size: str,
    cache_inactive: str,
    use_ipv6: bool,
) -> str:
    upstream = f"{id}-{HTTP_PORT}"
    cache_path = ""
    cache_directives = "        proxy_cache off;\n"
    if cache:
        cache_path = (
            f"proxy_cache_path {cache_dir}/{id} levels=1:2 keys_zone={id}:10m "
            f"max_size={cache_max_size} inactive={cache_inactive} use_temp_path=off;\n"
        )
        cache_directives = (
            f"        proxy_cache {id};\n"
            "        proxy_cache_lock on;\n"
            "        proxy_cache_use_stale error timeout updating http_500 http_502 http_503 http_504;\n"
        )

    return f"""# generated, do not edit
{cache_path}
upstream {upstream} {{
    zone {upstream} 64k;
    server 127.0.0.1:{HTTP_PORT} down;
}}

server {{
{_listen(HTTP_PORT, use_ipv6)}
    server_name {" ".join(server_name)};
    client_max_body_size {client_max_body_size};

    location / {{
        proxy_pass http://{upstream};
        proxy_http_version 1.1;
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;
        proxy_set_header Upgrade $http_upgrade;
        proxy_set_header Connection $connection_upgrade;
{cache_directives}    }}
}}
"""


def render_stream_vhost(id: str, stream_port: list[int], use_ipv6: bool) -> str:
    blocks = "# generated, do not edit\n"
    for port in stream_port:
        upstream = f"{id}-{port}"
        blocks += f"""
upstream {upstream} {{
    zone {upstream} 64k;
    server 127.0.0.1:{port} down;
}}

server {{
{_listen(port, use_ipv6)}
    proxy_pass {upstream};
}}
"""
    return blocks
