"""
Planora - Travel preference onboarding and profile backend.

Packages:
- planora: settings, Supabase access, web app, observability, CLI
- onboarding: onboarding completion across the preference store,
  the identity metadata store and the local cache
"""

__version__ = "1.0.0"
