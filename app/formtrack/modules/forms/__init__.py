"""
Forms module: the form builder.

- A form targets one technician sub-role, or every technician when unset
- Questions are ordered and typed (eleven types, see service.QUESTION_TYPES)
- Only the creating admin (or a superadmin) may change a form
"""
