"""
Responses module: technicians fill in forms; admins review and export submissions.
"""
