"""共享组件：输出解析器与后端执行器。"""
