"""Media Stack Reconciler (MSR).

Single-host status and upgrade core for a fixed fleet of media-automation
containers (radarr, sonarr, prowlarr, ...):
 - reconciles the static service catalog with live container state
 - derives per-volume mapping health
 - tracks available versions on its own polling cadence
 - runs single-service and fleet-wide upgrades with failure isolation
"""
