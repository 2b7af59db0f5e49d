"""Canopy core engines: tree, memberships, roles, resolver, invites, audit."""
