"""Nginx Swarm Controller (NSC).

Keeps an nginx reverse proxy in line with the services of a Docker Swarm:
 - one http and/or stream vhost per labelled service
 - coalesced, tested configuration reloads
 - live upstream peers patched from DNS without reloading
 - unique server names and stream ports across services
"""
