"""
UI service - Streamlit components of the customer chat widget.
"""
