"""
Gigline pipeline services: envelopes, conversations, engagements, escrow
and presence. Routes and socket handlers call into these; they own every
state transition.
"""
