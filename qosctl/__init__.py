"""Command line front end for hfsc_qos."""
